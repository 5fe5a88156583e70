"""
Tests for launch plan construction: placeholder expansion, argument rules,
classpath assembly, natives extraction and plan persistence.
"""

import json
import zipfile
from pathlib import Path

import pytest

from conftest import install_vanilla, make_client_jar, make_jar
from mcruntime.documents import merge_version_documents
from mcruntime.exceptions import FileOperationError, IntegrityFailure
from mcruntime.launch_plan import (LEGACY_JVM_ARGS, assemble_classpath, clear_persisted, expand_placeholders,
                                   extract_natives, flatten_arguments, launch_inputs_hash, load_persisted,
                                   load_snapshot, mask_secrets, resolve_game_arguments)
from mcruntime.models import LaunchAuth, LoaderKind


# ═══════════════════════════════════════════════════════════════════
#  Arguments
# ═══════════════════════════════════════════════════════════════════


class TestArguments:
    def test_expand_placeholders(self):
        """Known names substituted; unknown ones left and reported."""
        assert expand_placeholders("${a}-${b}", {"a": "1", "b": "2"}) == ("1-2", True)
        assert expand_placeholders("${a}-${zzz}", {"a": "1"}) == ("1-${zzz}", False)

    def test_flatten_rules(self):
        """Conditional entries follow OS rules; feature-gated ones stay off."""
        entries = [
            "-Xss1M",
            {"rules": [{"action": "allow", "os": {"name": "osx"}}], "value": ["-XstartOnFirstThread"]},
            {"rules": [{"action": "allow", "os": {"name": "linux"}}], "value": "-Dlinux=1"},
            {"rules": [{"action": "allow", "features": {"has_custom_resolution": True}}],
             "value": ["--width", "${resolution_width}"]},
            42,
        ]
        assert flatten_arguments(entries, "linux") == ["-Xss1M", "-Dlinux=1"]
        assert flatten_arguments(entries, "osx") == ["-Xss1M", "-XstartOnFirstThread"]

    def test_game_pairs_dropped_together(self):
        """Unresolved values drop their flag too; --demo never survives."""
        raw = ["--username", "${auth_player_name}", "--clientId", "${clientid}", "--demo", "--fullscreen"]
        assert resolve_game_arguments(raw, {"auth_player_name": "Steve"}) == \
            ["--username", "Steve", "--fullscreen"]

    def test_mask_secrets(self):
        """Token values masked; offline '0' left as is."""
        args = ["--accessToken", "abc", "--session", "token:abc:u", "--username", "x"]
        assert mask_secrets(args, "abc") == ["--accessToken", "***", "--session", "***", "--username", "x"]
        assert mask_secrets(["--accessToken", "0"], "0") == ["--accessToken", "0"]


# ═══════════════════════════════════════════════════════════════════
#  Classpath and natives
# ═══════════════════════════════════════════════════════════════════


def _lib(rel: str, **extra):
    parts = rel.split("/")
    return {"name": f"{'.'.join(parts[:-3])}:{parts[-3]}:{parts[-2]}",
            "downloads": {"artifact": {"path": rel}}, **extra}


class TestClasspath:
    def test_order_dedupe_and_client_last(self, tmp_path: Path):
        """Declaration order kept, duplicates and disallowed entries dropped, client jar last."""
        libs = tmp_path / "libs"
        client = tmp_path / "client.jar"
        doc = {"libraries": [
            _lib("org/b/b/1/b-1.jar"),
            _lib("org/a/a/1/a-1.jar"),
            _lib("org/b/b/1/b-1.jar"),
            _lib("org/w/w/1/w-1.jar", rules=[{"action": "allow", "os": {"name": "windows"}}]),
        ]}
        entries = assemble_classpath(doc, libs, client, "linux")
        assert entries == [str(libs / "org/b/b/1/b-1.jar"), str(libs / "org/a/a/1/a-1.jar"), str(client)]

    def test_redeclared_artifact_keeps_last_version(self, tmp_path: Path):
        """A loader's newer asm replaces vanilla's in its original slot; two versions never load together."""
        libs = tmp_path / "libs"
        client = tmp_path / "client.jar"
        doc = merge_version_documents(
            {"libraries": [_lib("org/ow2/asm/asm/9.3/asm-9.3.jar"), _lib("com/google/guava/32/guava-32.jar")]},
            {"libraries": [_lib("org/ow2/asm/asm/9.6/asm-9.6.jar"), _lib("net/fabricmc/loader/1/loader-1.jar")]},
        )
        assert len(doc["libraries"]) == 4
        entries = assemble_classpath(doc, libs, client, "linux")
        assert entries == [str(libs / "org/ow2/asm/asm/9.6/asm-9.6.jar"),
                           str(libs / "com/google/guava/32/guava-32.jar"),
                           str(libs / "net/fabricmc/loader/1/loader-1.jar"),
                           str(client)]

    def test_classifier_is_separate_artifact(self, tmp_path: Path):
        """A natives classifier does not replace the main artifact."""
        libs = tmp_path / "libs"
        main = {"name": "org.lwjgl:lwjgl:3.3.1",
                "downloads": {"artifact": {"path": "org/lwjgl/lwjgl/3.3.1/lwjgl-3.3.1.jar"}}}
        natives = {"name": "org.lwjgl:lwjgl:3.3.1:natives-linux",
                   "downloads": {"artifact": {"path": "org/lwjgl/lwjgl/3.3.1/lwjgl-3.3.1-natives-linux.jar"}}}
        entries = assemble_classpath({"libraries": [main, natives]}, libs, tmp_path / "client.jar", "linux")
        assert len(entries) == 3


class TestNatives:
    @pytest.fixture
    def native_doc(self, tmp_path: Path):
        libs = tmp_path / "libs"
        rel = "org/lwjgl/lwjgl-platform/2.9.4/lwjgl-platform-2.9.4-natives-linux.jar"
        make_jar(libs / rel, {"META-INF/MANIFEST.MF": "x", "liblwjgl.so": b"\x7fELF", "skip/me.txt": "x"})
        doc = {"libraries": [{
            "name": "org.lwjgl:lwjgl-platform:2.9.4",
            "natives": {"linux": "natives-linux"},
            "extract": {"exclude": ["skip/"]},
            "downloads": {"classifiers": {"natives-linux": {"path": rel}}},
        }]}
        return doc, libs

    def test_extract(self, native_doc, tmp_path: Path):
        """Native files land in the natives dir; META-INF and excludes skipped; idempotent."""
        doc, libs = native_doc
        natives = tmp_path / "natives"
        assert extract_natives(doc, libs, natives, "linux") == 1
        assert (natives / "liblwjgl.so").read_bytes() == b"\x7fELF"
        assert not (natives / "META-INF").exists()
        assert extract_natives(doc, libs, natives, "linux") == 0

    def test_other_os_ignored(self, native_doc, tmp_path: Path):
        """No classifier for the OS → nothing extracted."""
        doc, libs = native_doc
        assert extract_natives(doc, libs, tmp_path / "natives", "windows") == 0

    def test_unsafe_entry(self, native_doc, tmp_path: Path):
        """Path traversal inside a natives archive → FileOperationError."""
        doc, libs = native_doc
        path = libs / doc["libraries"][0]["downloads"]["classifiers"]["natives-linux"]["path"]
        with zipfile.ZipFile(path, "w") as zf:
            zf.writestr("../evil.so", b"x")
        with pytest.raises(FileOperationError):
            extract_natives(doc, libs, tmp_path / "natives", "linux")

    def test_corrupt_archive(self, native_doc, tmp_path: Path):
        """Unreadable natives archive → IntegrityFailure."""
        doc, libs = native_doc
        path = libs / doc["libraries"][0]["downloads"]["classifiers"]["natives-linux"]["path"]
        path.write_bytes(b"garbage")
        with pytest.raises(IntegrityFailure):
            extract_natives(doc, libs, tmp_path / "natives", "linux")


# ═══════════════════════════════════════════════════════════════════
#  LaunchPlanBuilder
# ═══════════════════════════════════════════════════════════════════


class TestBuild:
    def test_modern_plan(self, built_plan, layout, instance_paths):
        """Resolved arguments, memory flags, classpath and environment."""
        assert built_plan.main_class == "net.minecraft.client.main.Main"
        assert built_plan.java_args[:2] == ["-Xms512M", "-Xmx4096M"]
        cp = built_plan.java_args[built_plan.java_args.index("-cp") + 1]
        assert cp == ":".join(built_plan.classpath_entries)
        assert built_plan.classpath_entries[-1] == str(layout.version_jar_path("1.20.1"))
        assert f"-Djava.library.path={instance_paths.natives_dir}" in built_plan.java_args
        args = built_plan.game_args
        assert args[args.index("--username") + 1] == "Steve"
        assert args[args.index("--assetIndex") + 1] == "5"
        assert "--clientId" not in args and "--demo" not in args
        assert not any("${" in a for a in args)
        assert built_plan.env["JAVA_HOME"].endswith("jdk")
        assert built_plan.loader is LoaderKind.VANILLA

    def test_memory_override(self, layout, instance_paths, make_record, java17, plan_builder):
        """Per-instance heap bounds win over the engine defaults."""
        doc = install_vanilla(layout)
        plan = plan_builder.build(record=make_record(memory_min_mb=1024, memory_max_mb=2048),
                                  paths=instance_paths, document=doc, java=java17,
                                  auth=LaunchAuth.offline("Steve"), required_java_major=17)
        assert plan.java_args[:2] == ["-Xms1024M", "-Xmx2048M"]

    def test_legacy_document(self, layout, instance_paths, make_record, java17, plan_builder):
        """minecraftArguments split; default JVM template used."""
        jar = make_client_jar(layout.version_jar_path("1.12.2"))
        doc = {
            "id": "1.12.2",
            "mainClass": "net.minecraft.client.main.Main",
            "minecraftArguments": "--username ${auth_player_name} --version ${version_name} "
                                  "--userProperties ${user_properties}",
            "downloads": {"client": {"url": "https://x/client.jar", "size": jar.stat().st_size}},
            "libraries": [],
        }
        plan = plan_builder.build(record=make_record(version="1.12.2"), paths=instance_paths, document=doc,
                                  java=java17, auth=LaunchAuth.offline("Steve"), required_java_major=8)
        assert plan.game_args == ["--username", "Steve", "--version", "1.12.2", "--userProperties", "{}"]
        assert len(plan.java_args) == 2 + len(LEGACY_JVM_ARGS)
        assert "-Dminecraft.launcher.brand=mcruntime" in plan.java_args
        assert plan.classpath_entries == [str(jar)]

    def test_bad_client_jar_removed(self, layout, instance_paths, make_record, java17, plan_builder):
        """Unusable client jar → IntegrityFailure and the file is deleted."""
        doc = install_vanilla(layout)
        jar = layout.version_jar_path("1.20.1")
        jar.write_bytes(b"truncated")
        with pytest.raises(IntegrityFailure):
            plan_builder.build(record=make_record(), paths=instance_paths, document=doc, java=java17,
                               auth=LaunchAuth.offline("Steve"), required_java_major=17)
        assert not jar.exists()


# ═══════════════════════════════════════════════════════════════════
#  Persistence
# ═══════════════════════════════════════════════════════════════════


class TestPersistence:
    def test_files_written_and_reloaded(self, built_plan, instance_paths):
        """Plan, command, document and snapshot written; reload gives an equal plan."""
        for p in (instance_paths.launch_plan_path, instance_paths.launch_command_path,
                  instance_paths.version_json_path, instance_paths.runtime_state_path):
            assert p.is_file()
        assert load_snapshot(instance_paths).version_id == "1.20.1"
        assert load_persisted(instance_paths, auth=built_plan.auth) == built_plan

    def test_token_never_persisted(self, layout, instance_paths, make_record, java17, plan_builder):
        """Online tokens are masked on disk and re-bound on reload."""
        auth = LaunchAuth(username="Alex", uuid="0" * 32, access_token="secret-token", user_type="msa")
        doc = install_vanilla(layout)
        plan = plan_builder.build(record=make_record(), paths=instance_paths, document=doc, java=java17,
                                  auth=auth, required_java_major=17)
        plan_builder.persist(instance_paths, plan, doc)
        assert "secret-token" not in instance_paths.launch_plan_path.read_text(encoding="utf-8")
        assert "secret-token" not in instance_paths.launch_command_path.read_text(encoding="utf-8")
        reloaded = load_persisted(instance_paths, auth=auth)
        assert reloaded.game_args[reloaded.game_args.index("--accessToken") + 1] == "secret-token"

    def test_drift_rejected(self, built_plan, instance_paths):
        """Editing the stored document invalidates the plan."""
        doc = json.loads(instance_paths.version_json_path.read_text(encoding="utf-8"))
        doc["mainClass"] = "changed.Main"
        instance_paths.version_json_path.write_text(json.dumps(doc), encoding="utf-8")
        assert load_persisted(instance_paths) is None

    def test_inputs_hash(self, layout, instance_paths, make_record, java17, plan_builder, engine_config):
        """Plans built from other inputs are not reused."""
        auth = LaunchAuth.offline("Steve")
        record = make_record()
        doc = install_vanilla(layout)
        inputs = launch_inputs_hash(record, engine_config, auth)
        plan = plan_builder.build(record=record, paths=instance_paths, document=doc, java=java17,
                                  auth=auth, required_java_major=17)
        plan_builder.persist(instance_paths, plan, doc, inputs)
        assert load_persisted(instance_paths, inputs_hash=inputs) is not None
        other = launch_inputs_hash(make_record(memory_max_mb=1024), engine_config, auth)
        assert other != inputs
        assert load_persisted(instance_paths, inputs_hash=other) is None

    def test_clear(self, built_plan, instance_paths):
        """clear_persisted removes every runtime file; nothing left to load."""
        removed = clear_persisted(instance_paths)
        assert instance_paths.launch_plan_path in removed
        assert load_persisted(instance_paths) is None
        assert clear_persisted(instance_paths) == []
