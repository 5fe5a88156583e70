"""
Tests for maven coordinates, rule evaluation, library artifacts and POM resolution.

Pure unit tests: no network, POM bodies come from an in-memory mapping.
"""

from pathlib import Path

import pytest

from mcruntime.maven import (
    MavenCoordinate,
    library_artifact,
    library_identity,
    library_native,
    parse_install_profile_libraries,
    parse_pom,
    repositories_for_library,
    resolve_transitive_dependencies,
    rules_allow,
    substitute_properties,
)
from mcruntime.routes import FABRIC, MAVEN, MOJANG


# ═══════════════════════════════════════════════════════════════════
#  MavenCoordinate
# ═══════════════════════════════════════════════════════════════════


class TestMavenCoordinate:
    def test_three_parts(self):
        """g:a:v → jar without classifier."""
        c = MavenCoordinate.parse("com.mojang:brigadier:1.0.18")
        assert (c.group, c.artifact, c.version, c.classifier, c.extension) == \
            ("com.mojang", "brigadier", "1.0.18", None, "jar")
        assert c.rel_path == "com/mojang/brigadier/1.0.18/brigadier-1.0.18.jar"

    def test_classifier(self):
        """Fourth part that is not an extension is a classifier."""
        c = MavenCoordinate.parse("net.minecraftforge:forge:1.20.1-47.2.0:installer")
        assert c.classifier == "installer"
        assert c.file_name == "forge-1.20.1-47.2.0-installer.jar"

    def test_at_extension(self):
        """g:a:v@zip → extension zip."""
        c = MavenCoordinate.parse("de.oceanlabs.mcp:mcp_config:1.20.1@zip")
        assert c.extension == "zip"
        assert c.classifier is None
        assert str(c) == "de.oceanlabs.mcp:mcp_config:1.20.1@zip"

    def test_fourth_part_extension(self):
        """A known extension in fourth position is not a classifier."""
        c = MavenCoordinate.parse("g.x:a:1:zip")
        assert c.extension == "zip"
        assert c.classifier is None

    def test_five_parts(self):
        """g:a:v:classifier:ext."""
        c = MavenCoordinate.parse("g.x:a:1:natives-linux:zip")
        assert c.classifier == "natives-linux"
        assert c.extension == "zip"

    @pytest.mark.parametrize("name", ["", "a:b", "a::1", ":b:1"])
    def test_invalid(self, name):
        """Fewer than three non-empty parts → ValueError."""
        with pytest.raises(ValueError):
            MavenCoordinate.parse(name)

    def test_path_and_url(self, tmp_path: Path):
        """path_in() and url() use the repository-relative path."""
        c = MavenCoordinate.parse("org.ow2.asm:asm:9.6")
        assert c.path_in(tmp_path) == tmp_path / "org" / "ow2" / "asm" / "asm" / "9.6" / "asm-9.6.jar"
        assert c.url("https://repo.example/") == "https://repo.example/org/ow2/asm/asm/9.6/asm-9.6.jar"

    def test_identity_ignores_version(self):
        """Override identity is group:artifact[:classifier]."""
        assert library_identity({"name": "org.ow2.asm:asm:9.6"}) == "org.ow2.asm:asm"
        assert library_identity({"name": "org.lwjgl:lwjgl:3.3.1:natives-linux"}) == "org.lwjgl:lwjgl:natives-linux"
        assert library_identity({"name": "broken"}) == "broken"


# ═══════════════════════════════════════════════════════════════════
#  rules_allow
# ═══════════════════════════════════════════════════════════════════


class TestRules:
    def test_no_rules_allowed(self):
        """Missing rules allow everything."""
        assert rules_allow(None, "linux", os_version="6.0")
        assert rules_allow([], "windows", os_version="10.0")

    def test_last_match_wins(self):
        """allow-all then disallow-osx: allowed on linux, not on osx."""
        rules = [{"action": "allow"}, {"action": "disallow", "os": {"name": "osx"}}]
        assert rules_allow(rules, "linux", arch="x86_64", os_version="6.0")
        assert not rules_allow(rules, "osx", arch="x86_64", os_version="14.0")

    def test_only_matching_os(self):
        """A single allow rule for windows disallows everything else."""
        rules = [{"action": "allow", "os": {"name": "windows"}}]
        assert rules_allow(rules, "windows", arch="x86_64", os_version="10.0")
        assert not rules_allow(rules, "linux", arch="x86_64", os_version="6.0")

    def test_features(self):
        """Feature rules need the feature flag set."""
        rules = [{"action": "allow", "features": {"is_demo_user": True}}]
        assert not rules_allow(rules, "linux", arch="x86_64", os_version="6.0")
        assert rules_allow(rules, "linux", arch="x86_64", os_version="6.0", features={"is_demo_user": True})

    def test_os_version_pattern(self):
        """os.version is a regex over the OS release."""
        rules = [{"action": "allow", "os": {"name": "osx", "version": "^10\\.5\\.\\d$"}}]
        assert rules_allow(rules, "osx", arch="x86_64", os_version="10.5.8")
        assert not rules_allow(rules, "osx", arch="x86_64", os_version="14.1")


# ═══════════════════════════════════════════════════════════════════
#  Library artifacts and repositories
# ═══════════════════════════════════════════════════════════════════


class TestLibraryArtifact:
    def test_declared_artifact(self, tmp_path: Path):
        """downloads.artifact wins: declared path, url first, sha1 kept."""
        lib = {
            "name": "com.mojang:logging:1.1.1",
            "downloads": {"artifact": {
                "path": "com/mojang/logging/1.1.1/logging-1.1.1.jar",
                "url": "https://libraries.minecraft.net/com/mojang/logging/1.1.1/logging-1.1.1.jar",
                "sha1": "ABC", "size": 10}},
        }
        art = library_artifact(lib, tmp_path)
        assert art.path == tmp_path / "com" / "mojang" / "logging" / "1.1.1" / "logging-1.1.1.jar"
        assert art.urls[0] == lib["downloads"]["artifact"]["url"]
        assert art.sha1 == "ABC"
        assert art.size == 10

    def test_name_only_uses_repositories(self, tmp_path: Path):
        """Name-only entries are looked up in their own repo first."""
        lib = {"name": "net.fabricmc:fabric-loader:0.15.11", "url": "https://maven.fabricmc.net/"}
        art = library_artifact(lib, tmp_path)
        assert art.urls[0] == f"{FABRIC.MAVEN}/net/fabricmc/fabric-loader/0.15.11/fabric-loader-0.15.11.jar"
        assert art.path.name == "fabric-loader-0.15.11.jar"

    def test_natives_only_entry(self, tmp_path: Path):
        """Legacy natives-only entries have no main artifact but a native one."""
        lib = {
            "name": "org.lwjgl.lwjgl:lwjgl-platform:2.9.4",
            "natives": {"linux": "natives-linux", "windows": "natives-windows-${arch}"},
            "extract": {"exclude": ["META-INF/"]},
            "downloads": {"classifiers": {"natives-linux": {
                "path": "org/lwjgl/lwjgl/lwjgl-platform/2.9.4/lwjgl-platform-2.9.4-natives-linux.jar",
                "url": "https://libraries.minecraft.net/org/lwjgl/lwjgl/lwjgl-platform/2.9.4/"
                       "lwjgl-platform-2.9.4-natives-linux.jar",
                "sha1": "deadbeef"}}},
        }
        assert library_artifact(lib, tmp_path) is None
        native = library_native(lib, tmp_path, os_name="linux")
        assert native.path.name == "lwjgl-platform-2.9.4-natives-linux.jar"
        assert native.extract_exclude == ["META-INF/"]
        assert library_native(lib, tmp_path, os_name="osx") is None

    def test_official_repository_first(self):
        """Group's official repo precedes declared ones."""
        repos = repositories_for_library({"name": "com.mojang:authlib:4.0"}, ["https://repo.example"])
        assert repos == [MOJANG.LIBRARIES, "https://repo.example"]

    def test_experimental_repositories_skipped(self):
        """JetBrains experimental repos are dropped unless the library points there."""
        exp = "https://maven.pkg.jetbrains.space/kotlin/p/kotlin/dev"
        repos = repositories_for_library({"name": "x.y:z:1"}, [exp, MAVEN.CENTRAL])
        assert exp not in repos
        assert MAVEN.CENTRAL in repos

    def test_unknown_group_defaults(self):
        """No own/official/declared repo → default list."""
        repos = repositories_for_library({"name": "x.y:z:1"})
        assert MOJANG.LIBRARIES in repos
        assert MAVEN.CENTRAL in repos


# ═══════════════════════════════════════════════════════════════════
#  Installer profiles
# ═══════════════════════════════════════════════════════════════════


class TestInstallProfileLibraries:
    def test_collects_processors_and_dedups(self):
        """libraries + client processor jars/classpath, server-only skipped, no duplicates."""
        profile = {
            "libraries": [{"name": "a.b:c:1"}, {"name": "a.b:c:1"}],
            "processors": [
                {"jar": "p.q:tool:2", "classpath": ["p.q:dep:3", "a.b:c:1"]},
                {"sides": ["server"], "jar": "s.s:server-only:1"},
            ],
        }
        names = [lib["name"] for lib in parse_install_profile_libraries(profile, "linux")]
        assert names == ["a.b:c:1", "p.q:tool:2", "p.q:dep:3"]

    def test_legacy_version_info(self):
        """Old installers keep libraries under versionInfo."""
        profile = {"versionInfo": {"libraries": [{"name": "net.minecraft:launchwrapper:1.12"}]}}
        assert [lib["name"] for lib in parse_install_profile_libraries(profile, "linux")] == \
            ["net.minecraft:launchwrapper:1.12"]


# ═══════════════════════════════════════════════════════════════════
#  POM resolution
# ═══════════════════════════════════════════════════════════════════


REPO = "https://repo.example/maven"

ROOT_POM = """<?xml version="1.0"?>
<project xmlns="http://maven.apache.org/POM/4.0.0">
  <parent><groupId>org.ex</groupId><artifactId>parent</artifactId><version>1</version></parent>
  <artifactId>root</artifactId>
  <properties><dep.version>2.0</dep.version></properties>
  <dependencies>
    <dependency><groupId>org.ex</groupId><artifactId>lib</artifactId><version>${dep.version}</version></dependency>
    <dependency><groupId>org.ex</groupId><artifactId>managed</artifactId></dependency>
    <dependency><groupId>junit</groupId><artifactId>junit</artifactId><version>4.13</version>
      <scope>test</scope></dependency>
    <dependency><groupId>org.ex</groupId><artifactId>opt</artifactId><version>1</version>
      <optional>true</optional></dependency>
    <dependency><groupId>org.ex</groupId><artifactId>ranged</artifactId><version>[1.5,2.0)</version></dependency>
    <dependency><groupId>org.ex</groupId><artifactId>unresolved</artifactId><version>${nope}</version></dependency>
  </dependencies>
</project>
"""

PARENT_POM = """<project>
  <groupId>org.ex</groupId><artifactId>parent</artifactId><version>1</version><packaging>pom</packaging>
  <dependencyManagement><dependencies>
    <dependency><groupId>org.ex</groupId><artifactId>managed</artifactId><version>3.1</version></dependency>
  </dependencies></dependencyManagement>
</project>
"""


def _fetcher(poms):
    requested = []

    def fetch(urls):
        requested.extend(urls)
        for url in urls:
            if url in poms:
                return poms[url]
        return None
    fetch.requested = requested
    return fetch


class TestPom:
    def test_parse_inherits_group_and_version(self):
        """groupId/version fall back to the parent."""
        pom = parse_pom(ROOT_POM)
        assert (pom.group, pom.artifact, pom.version) == ("org.ex", "root", "1")
        assert pom.parent.artifact == "parent"
        assert pom.properties["dep.version"] == "2.0"
        assert pom.properties["project.version"] == "1"

    def test_malformed(self):
        """Bad XML → ValueError."""
        with pytest.raises(ValueError):
            parse_pom("<project><unclosed></project>")

    def test_substitute_nested(self):
        """Properties resolve through other properties."""
        assert substitute_properties("${a}", {"a": "${b}", "b": "7"}) == "7"
        assert substitute_properties("${missing}", {}) == "${missing}"
        assert substitute_properties(None, {}) is None

    def test_transitive(self):
        """Root, then resolvable compile deps in order; skipped scopes/optional/unresolved dropped."""
        fetch = _fetcher({
            f"{REPO}/org/ex/root/1/root-1.pom": ROOT_POM,
            f"{REPO}/org/ex/parent/1/parent-1.pom": PARENT_POM,
        })
        result = resolve_transitive_dependencies(fetch, [MavenCoordinate("org.ex", "root", "1")], [REPO + "/"])
        assert [str(c) for c in result] == [
            "org.ex:root:1",
            "org.ex:lib:2.0",
            "org.ex:managed:3.1",
            "org.ex:ranged:1.5",
        ]

    def test_missing_pom_ends_branch(self):
        """A root without POM is still returned."""
        result = resolve_transitive_dependencies(_fetcher({}), [MavenCoordinate("a.b", "c", "1")], [REPO])
        assert [str(c) for c in result] == ["a.b:c:1"]

    def test_max_artifacts(self):
        """Result size is bounded."""
        fetch = _fetcher({
            f"{REPO}/org/ex/root/1/root-1.pom": ROOT_POM,
            f"{REPO}/org/ex/parent/1/parent-1.pom": PARENT_POM,
        })
        result = resolve_transitive_dependencies(fetch, [MavenCoordinate("org.ex", "root", "1")], [REPO],
                                                 max_artifacts=2)
        assert len(result) == 2
