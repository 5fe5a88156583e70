"""
engine.py - Runtime engine (orchestrator)

Provides the RuntimeEngine class, the entrypoint for host applications. It
owns the HTTP session, the download engine and caches, the resolvers, the
Java provisioner, the plan builder and the process launcher, and serializes
mutating operations per instance.

Usage example:
    from mcruntime import RuntimeEngine, InstanceRecord
    with RuntimeEngine() as engine:
        record = InstanceRecord(id="demo", name="Demo", version="1.20.1", loader="fabric",
                                root=engine.layout.instance_dir("demo"))
        outcome = engine.launch(record)
"""

from __future__ import annotations

import time
import logging
import subprocess
from pathlib import Path
from typing import *

import requests

from .cache import ContentCache, TieredCache
from .client import MetadataClient
from .config import EngineConfig
from .documents import resolve_inheritance
from .download import DownloadManager
from .exceptions import (FileOperationError, IntegrityFailure, MissingMetadataFailure, RuntimeCrash,
                         RuntimeEngineError, ValidationFailure)
from .fileops import read_json, safe_remove
from .java import JavaProvisioner, java_satisfies, probe_java, required_java_major
from .launch_plan import LaunchPlanBuilder, clear_persisted, launch_inputs_hash, load_persisted
from .launcher import LaunchSession, ModsAsideGuard, ProcessLauncher
from .loaders import LoaderResolver
from .locks import InstanceLockSet, PreflightGate
from .models import (InstanceRecord, JavaRuntime, LaunchAuth, LaunchOutcome, LaunchPlan, LaunchState, LoaderKind,
                     LoaderProfile, RepairMode, RepairSummary, ValidationReport)
from .paths import InstancePaths, LauncherLayout, current_os_name
from .repair import RepairManager, has_repairs
from .state import InstanceStateStore
from .utils import session_factory
from .validator import validate_launch
from .versions import VersionResolver

logger = logging.getLogger(__name__)


class RuntimeEngine:
    """
    Provisions, validates, launches and repairs game instances.

    Parameters
    ----------
    config : Optional[EngineConfig]
        Engine settings; defaults when None.
    session : Optional[requests.Session]
        Shared HTTP session. Created with ``session_factory()`` when None.
    os_name : Optional[str]
        Target OS for rule evaluation ("windows", "osx", "linux").
    java_probe : Callable
        Probes a java binary (injected in tests).
    popen : Callable
        Process factory for the game and for loader installers.
    sleep : Callable[[float], None]
        Sleep used for backoff and polling.

    Examples
    --------
    >>> engine = RuntimeEngine(EngineConfig(launcher_root="~/.mcruntime"))
    >>> plan = engine.bootstrap(record)
    >>> plan.command_line()[0]
    '/usr/lib/jvm/java-17/bin/java'
    """

    def __init__(self,
                 config: Optional[EngineConfig] = None,
                 *,
                 session: Optional[requests.Session] = None,
                 os_name: Optional[str] = None,
                 java_probe: Callable[..., Optional[JavaRuntime]] = probe_java,
                 popen: Callable[..., Any] = subprocess.Popen,
                 sleep: Callable[[float], None] = time.sleep):
        self.config = config or EngineConfig()
        self.os_name = os_name or current_os_name()
        self.layout = LauncherLayout(self.config.launcher_root)
        net = self.config.network

        asset_slots = self.config.concurrency_for("asset")
        default_slots = self.config.concurrency_for("library")
        self.session = session or session_factory(net.user_agent, pool_maxsize=asset_slots + default_slots)

        cache = TieredCache(ContentCache(self.layout.cache_dir, name="local"),
                            ContentCache(self.config.global_cache_dir, name="global"))
        self.downloader = DownloadManager(self.session, cache=cache, max_retries=net.retries,
                                          backoff_base=net.backoff_base, timeout=net.timeout,
                                          slots={"asset": asset_slots, "default": default_slots},
                                          progress=self.config.progress, sleep=sleep)
        self.client = MetadataClient(self.session, timeout=net.timeout, max_retries=net.retries,
                                     backoff_base=net.backoff_base, cache_dir=self.layout.metadata_cache_dir,
                                     cache_ttl=self.config.manifest_ttl, sleep=sleep)
        self.versions = VersionResolver(self.layout, self.client, self.downloader,
                                        manifest_ttl=self.config.manifest_ttl)
        self.loaders = LoaderResolver(self.layout, self.client, self.downloader, self.versions,
                                      installer_timeout=self.config.installer_timeout,
                                      poll_interval=self.config.poll_interval,
                                      min_client_jar_bytes=self.config.min_client_jar_bytes,
                                      popen=popen, sleep=sleep)
        self.java = JavaProvisioner(self.layout, self.client, self.downloader, probe=java_probe)
        self.builder = LaunchPlanBuilder(self.layout, self.config, os_name=self.os_name)
        self.process_launcher = ProcessLauncher(early_exit_window=self.config.early_exit_window,
                                                poll_interval=self.config.poll_interval,
                                                popen=popen, sleep=sleep)
        self.locks = InstanceLockSet()
        self.preflight_gate = PreflightGate()

    # helpers
    @property
    def network_requests(self) -> int:
        """HTTP requests issued so far by the metadata client and the download engine."""
        return self.client.network_requests + self.downloader.network_requests

    @staticmethod
    def paths_for(record: InstanceRecord) -> InstancePaths:
        return InstancePaths(record.root, record.game_dir)

    def state_for(self, record: InstanceRecord) -> InstanceStateStore:
        return InstanceStateStore(self.paths_for(record))

    def _validate(self, paths: InstancePaths, plan: LaunchPlan) -> ValidationReport:
        return validate_launch(paths, plan, min_jar_bytes=self.config.min_client_jar_bytes, os_name=self.os_name)

    def _resolve_java(self, record: InstanceRecord, required: int) -> JavaRuntime:
        mode = record.java_mode or self.config.java_mode
        path = record.java_path or self.config.java_path
        return self.java.resolve(required, mode, path)

    def _loader_profile(self, record: InstanceRecord, java: JavaRuntime, *, force: bool = False) -> LoaderProfile:
        return self.loaders.ensure_profile(record.loader, record.version, record.loader_version,
                                           java=java, force=force)

    # bootstrap
    def _prepare(self, record: InstanceRecord, auth: LaunchAuth, force: bool,
                 state: InstanceStateStore) -> LaunchPlan:
        """
        Persisted plan when it still validates and was built from the same
        inputs; otherwise a freshly built and persisted one (not validated).
        """
        paths = self.paths_for(record)
        inputs = launch_inputs_hash(record, self.config, auth)
        if force:
            removed = clear_persisted(paths)
            if removed:
                logger.info("Forced rebuild of %s: cleared %d runtime files", record.id, len(removed))
        else:
            plan = load_persisted(paths, inputs_hash=inputs, auth=auth)
            if plan is not None:
                report = self._validate(paths, plan)
                if report.ok:
                    logger.info("Reusing launch plan of %s", record.id)
                    state.set(LaunchState.READY, reused=True, versionId=plan.version_id)
                    return plan
                logger.info("Persisted plan of %s failed pre-flight (%s); rebuilding", record.id, report.summary())

        state.set(LaunchState.RESOLVING, version=record.version, loader=record.loader.value)
        self.layout.ensure_dirs()
        paths.ensure_dirs()
        vanilla = self.versions.ensure_version_document(record.version)
        java = self._resolve_java(record, required_java_major(record.version, vanilla))

        profile: Optional[LoaderProfile] = None
        top = vanilla
        if record.loader is not LoaderKind.VANILLA:
            profile = self._loader_profile(record, java)
            top = profile.document
        try:
            document = resolve_inheritance(top, self.versions.load_document)
        except ValueError as exc:
            raise MissingMetadataFailure(f"Cannot merge the version chain of {record.version}: {exc}",
                                         context={"instance": record.id}) from exc

        required = required_java_major(record.version, document, profile.document if profile else None)
        if not java_satisfies(java.major, required):
            java = self._resolve_java(record, required)

        state.set(LaunchState.DOWNLOADING, versionId=document.get("id"))
        self.versions.ensure_runtime_files(document, paths.game_dir)

        state.set(LaunchState.PREPARING)
        plan = self.builder.build(record=record, paths=paths, document=document, java=java, auth=auth,
                                  required_java_major=required,
                                  loader_version=profile.loader_version if profile else None,
                                  loader_profile_resolved=profile is not None or record.loader is LoaderKind.VANILLA)
        self.builder.persist(paths, plan, document, inputs)
        logger.info("Built launch plan for %s (%s, Java %d)", record.id, plan.version_id, java.major)
        return plan

    def _prepare_recovering(self, record: InstanceRecord, auth: LaunchAuth, force: bool,
                            state: InstanceStateStore) -> LaunchPlan:
        """_prepare(), rebuilding once when a downloaded artifact turns out corrupt."""
        try:
            return self._prepare(record, auth, force, state)
        except IntegrityFailure as exc:
            logger.warning("Integrity failure while preparing %s (%s); rebuilding once", record.id, exc.message)
            state.event("integrity_failure", error=exc.message, action="rebuild")
            return self._prepare(record, auth, True, state)

    def bootstrap(self, record: InstanceRecord, auth: Optional[LaunchAuth] = None,
                  force: bool = False) -> LaunchPlan:
        """
        Make `record` launchable and return its plan.

        Parameters
        ----------
        record : InstanceRecord
            Instance to provision.
        auth : Optional[LaunchAuth]
            Session to bind; an offline profile named after the instance by default.
        force : bool
            Discard the persisted plan and rebuild.

        Raises
        ------
        InstanceBusyError
            Another operation holds the instance.
        ValidationFailure
            The built plan fails a required pre-flight check.
        NetworkFailure, MissingMetadataFailure, IntegrityFailure, LoaderInstallFailure
            Provisioning failed.
        """
        auth = auth or LaunchAuth.offline(record.name)
        with self.locks.hold(record.id, "bootstrap"):
            state = self.state_for(record)
            try:
                plan = self._prepare_recovering(record, auth, force, state)
                state.set(LaunchState.VERIFYING)
                report = self._validate(self.paths_for(record), plan)
                if not report.ok:
                    raise ValidationFailure(f"Pre-flight validation failed: {report.summary()}", report,
                                            context={"instance": record.id})
            except RuntimeEngineError as exc:
                state.set(LaunchState.FAILED, error=exc.message, errorType=exc.__class__.__name__)
                raise
            state.set(LaunchState.READY, versionId=plan.version_id)
            return plan

    def preflight(self, record: InstanceRecord, auth: Optional[LaunchAuth] = None) -> ValidationReport:
        """
        Validate the runtime of `record`, bootstrapping it first when no plan
        exists. An overlapping call returns ``ok=True`` with a warning
        instead of duplicating the work.
        """
        if not self.preflight_gate.enter():
            report = ValidationReport()
            report.warnings.append("pre-flight already running; this request was skipped")
            logger.warning("Pre-flight for %s skipped: another pre-flight is running", record.id)
            return report
        try:
            auth = auth or LaunchAuth.offline(record.name)
            with self.locks.hold(record.id, "preflight"):
                state = self.state_for(record)
                paths = self.paths_for(record)
                plan = load_persisted(paths, auth=auth) or self._prepare_recovering(record, auth, False, state)
                report = self._validate(paths, plan)
                state.event("preflight", ok=report.ok, errors=report.errors, warnings=report.warnings)
                return report
        finally:
            self.preflight_gate.leave()

    # launch
    def _purge_for_session(self, record: InstanceRecord, plan: LaunchPlan) -> None:
        self.purge_version(plan.minecraft_version)
        clear_persisted(self.paths_for(record))

    def launch(self, record: InstanceRecord, auth: Optional[LaunchAuth] = None) -> LaunchOutcome:
        """
        Bootstrap and start the game, escalating through rebuild, safe mode
        and purge on early crashes.

        Raises
        ------
        InstanceBusyError
            Another operation holds the instance.
        ValidationFailure
            Pre-flight still fails after a forced rebuild.
        ProcessLaunchFailure
            Java could not be executed.
        RuntimeCrash
            Escalation exhausted; ``diagnostics`` and ``artifacts`` describe each crash.
        """
        auth = auth or LaunchAuth.offline(record.name)
        with self.locks.hold(record.id, "launch"):
            paths = self.paths_for(record)
            state = InstanceStateStore(paths)
            session = LaunchSession(
                instance_id=record.id,
                paths=paths,
                launcher=self.process_launcher,
                build_plan=lambda force: self._prepare_recovering(record, auth, force, state),
                validate=lambda plan: self._validate(paths, plan),
                purge=lambda plan: self._purge_for_session(record, plan),
                state=state,
                min_jar_bytes=self.config.min_client_jar_bytes,
            )
            try:
                return session.run()
            except (RuntimeCrash, ValidationFailure):
                raise
            except RuntimeEngineError as exc:
                state.set(LaunchState.FAILED, error=exc.message, errorType=exc.__class__.__name__)
                raise

    # maintenance
    def _reinstall_loader(self, record: InstanceRecord) -> LoaderProfile:
        vanilla = self.versions.ensure_version_document(record.version)
        java = self._resolve_java(record, required_java_major(record.version, vanilla))
        return self._loader_profile(record, java, force=True)

    def repair(self, record: InstanceRecord, mode: Union[RepairMode, str] = RepairMode.SMART) -> RepairSummary:
        """
        Run the repair manager on `record`. Any mutating repair that changed
        something invalidates the persisted plan so the next launch rebuilds.
        """
        mode = RepairMode.parse(mode)
        with self.locks.hold(record.id, "repair"):
            paths = self.paths_for(record)
            state = InstanceStateStore(paths)
            state.set(LaunchState.REPAIRING, mode=mode.value)
            manager = RepairManager(self.layout, paths, record,
                                    reinstall_loader=lambda: self._reinstall_loader(record))
            try:
                summary = manager.run(mode)
            except RuntimeEngineError as exc:
                state.set(LaunchState.FAILED, error=exc.message, errorType=exc.__class__.__name__)
                raise
            if mode.mutates and (has_repairs(summary.report) or mode is RepairMode.FULL):
                clear_persisted(paths)
            state.event("repair", mode=mode.value, issues=len(summary.report.issues_detected),
                        report=summary.report.to_dict())
            state.set(LaunchState.IDLE, repaired=mode.value)
            logger.info("Repair of %s (%s): %s", record.id, mode.value, summary.message.splitlines()[0])
            return summary

    def reset_runtime(self, record: InstanceRecord) -> List[Path]:
        """Drop the persisted runtime of `record` and restore mods left aside; returns removed paths."""
        with self.locks.hold(record.id, "reset"):
            paths = self.paths_for(record)
            removed = clear_persisted(paths)
            restored = ModsAsideGuard.restore_stale(paths.mods_dir)
            state = InstanceStateStore(paths)
            state.set(LaunchState.IDLE, reset=True, removed=[str(p) for p in removed],
                      restoredMods=[str(p) for p in restored])
            return removed

    def purge_version(self, version_id: str) -> List[Path]:
        """
        Delete the cached tree of `version_id` and every installed profile
        inheriting from it. Returns the removed directories.
        """
        removed: List[Path] = []
        versions = self.layout.versions_dir
        if not versions.is_dir():
            return removed
        for entry in sorted(versions.iterdir()):
            if not entry.is_dir():
                continue
            doc = read_json(self.layout.version_json_path(entry.name))
            inherits = doc.get("inheritsFrom") if isinstance(doc, dict) else None
            if entry.name == version_id or inherits == version_id:
                try:
                    safe_remove(entry)
                except OSError as exc:
                    raise FileOperationError(f"Could not purge {entry.name}: {exc}",
                                             context={"op": "purge_version", "path": str(entry)}) from exc
                removed.append(entry)
        logger.warning("Purged %d version directories for %s", len(removed), version_id)
        return removed

    # lifecycle
    def close(self) -> None:
        """Close the underlying requests session."""
        self.session.close()

    def __enter__(self) -> "RuntimeEngine":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"<RuntimeEngine root={str(self.layout.root)!r} os={self.os_name!r}>"
