"""
mcruntime.launcher
------------------

Process launch and crash escalation.

- ModsAsideGuard: moves the mods directory aside for a safe-mode attempt and
  restores it exactly once, after the safe-mode game has exited
- ProcessLauncher: spawns the game with per-run stdout/stderr capture and
  polls for an early exit
- EscalationMachine: one-way escalation stages for repeated failures
- LaunchSession: the launch loop tying plan building, validation, launching,
  crash diagnostics and escalation together

Escalation stages::

    INITIAL --crash--> REBUILT --same fingerprint, mods present--> SAFE_MODE
                          |                                          |
                          +--other fingerprint / no mods--+          | crash
                                                          v          v
                                                        PURGED <-----+
                                                          | crash
                                                          v
                                                      EXHAUSTED
"""

from __future__ import annotations

import os
import time
import shutil
import logging
import threading
import subprocess
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import *

from .diagnostics import diagnose_crash, recent_crash_reports, write_diagnostic
from .exceptions import FileOperationError, ProcessLaunchFailure, RuntimeCrash, ValidationFailure
from .models import (CrashClassification, LaunchOutcome, LaunchPlan, LaunchState, LoaderCrashDiagnostic,
                     LoaderKind, ValidationReport)
from .paths import InstancePaths
from .state import InstanceStateStore
from .utils import utc_stamp
from .validator import DEFAULT_MIN_CLIENT_JAR_BYTES, list_mod_files

logger = logging.getLogger(__name__)

ASIDE_PREFIX = "mods.disabled-safe-mode-"
DEFAULT_MAX_ATTEMPTS = 6


# mods directory guard
def restore_aside(aside: Path, mods_dir: Path) -> None:
    """
    Put `aside` back in place of `mods_dir`. Files the game created in the
    temporary mods directory are kept unless the original has the same name.
    """
    aside, mods_dir = Path(aside), Path(mods_dir)
    try:
        if mods_dir.is_dir():
            for entry in mods_dir.iterdir():
                target = aside / entry.name
                if not target.exists():
                    shutil.move(str(entry), str(target))
            shutil.rmtree(mods_dir)
        elif mods_dir.exists():
            mods_dir.unlink()
        os.replace(aside, mods_dir)
    except OSError as exc:
        raise FileOperationError(f"Could not restore mods from {aside.name}: {exc}",
                                 context={"op": "restore_mods", "path": str(aside)},
                                 hint=f"Move {aside} back to {mods_dir} manually.") from exc
    logger.info("Restored mods directory from %s", aside.name)


class ModsAsideGuard:
    """
    Scope object for a safe-mode attempt.

    Entering renames ``mods/`` to ``mods.disabled-safe-mode-<stamp>`` and
    leaves an empty ``mods/``; leaving restores it. ``release()`` is
    idempotent, so the directory is restored exactly once.
    """

    def __init__(self, mods_dir: Path):
        self.mods_dir = Path(mods_dir)
        self.aside: Optional[Path] = None
        self._lock = threading.Lock()
        self._acquired = False
        self._released = False

    @staticmethod
    def restore_stale(mods_dir: Path) -> List[Path]:
        """Restore aside directories left behind by an interrupted session."""
        mods_dir = Path(mods_dir)
        parent = mods_dir.parent
        if not parent.is_dir():
            return []
        stale = sorted(p for p in parent.iterdir() if p.is_dir() and p.name.startswith(ASIDE_PREFIX))
        for aside in stale:
            logger.warning("Restoring mods left aside by an interrupted session: %s", aside.name)
            restore_aside(aside, mods_dir)
        return stale

    def acquire(self) -> "ModsAsideGuard":
        with self._lock:
            if self._acquired:
                return self
            self._acquired = True
        if self.mods_dir.is_dir():
            self.aside = self.mods_dir.with_name(ASIDE_PREFIX + utc_stamp())
            try:
                os.replace(self.mods_dir, self.aside)
            except OSError as exc:
                self.aside = None
                raise FileOperationError(f"Could not move mods aside: {exc}",
                                         context={"op": "mods_aside", "path": str(self.mods_dir)}) from exc
            logger.info("Mods moved aside to %s for safe mode", self.aside.name)
        self.mods_dir.mkdir(parents=True, exist_ok=True)
        return self

    def release(self) -> bool:
        """Restore the mods directory; False when it was already released."""
        with self._lock:
            if self._released or not self._acquired:
                return False
            self._released = True
        if self.aside is not None:
            restore_aside(self.aside, self.mods_dir)
        return True

    @property
    def released(self) -> bool:
        return self._released

    def __enter__(self) -> "ModsAsideGuard":
        return self.acquire()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


# process launcher
@dataclass
class RunResult:
    """One spawned game process. `exit_code` is None while it is still running."""
    process: Any
    pid: int
    exit_code: Optional[int]
    stdout_path: Path
    stderr_path: Path
    started_at: float

    @property
    def running(self) -> bool:
        return self.exit_code is None


class ProcessLauncher:
    """
    Parameters
    ----------
    early_exit_window : float
        Seconds a fresh process is watched; exiting within it counts as an
        early exit.
    poll_interval : float
        Sleep between exit polls.
    """

    def __init__(self,
                 *,
                 early_exit_window: float = 8.0,
                 poll_interval: float = 0.25,
                 popen: Callable[..., Any] = subprocess.Popen,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic):
        self.early_exit_window = float(early_exit_window)
        self.poll_interval = float(poll_interval)
        self._popen = popen
        self._sleep = sleep
        self._clock = clock

    def spawn(self, plan: LaunchPlan, paths: InstancePaths) -> RunResult:
        """
        Start the game for `plan` in its game directory.

        Raises
        ------
        ProcessLaunchFailure
            If the Java binary cannot be executed.
        """
        stdout_path, stderr_path = paths.run_log_paths(utc_stamp())
        stdout_path.parent.mkdir(parents=True, exist_ok=True)
        Path(plan.game_dir).mkdir(parents=True, exist_ok=True)
        env = dict(os.environ)
        env.update(plan.env)
        started = time.time()
        with open(stdout_path, "wb") as out, open(stderr_path, "wb") as err:
            try:
                proc = self._popen(plan.command_line(), stdout=out, stderr=err, stdin=subprocess.DEVNULL,
                                   cwd=plan.game_dir, env=env)
            except OSError as exc:
                raise ProcessLaunchFailure(f"Could not start Java: {exc}",
                                           context={"java": plan.java_path, "cwd": plan.game_dir},
                                           hint="Check that the Java runtime exists and is executable.") from exc
        logger.info("Started %s (pid %s)", plan.version_id, proc.pid)
        return RunResult(proc, proc.pid, None, stdout_path, stderr_path, started)

    def wait_early_exit(self, result: RunResult) -> RunResult:
        """Poll for `early_exit_window` seconds; fills `exit_code` if the process ended."""
        deadline = self._clock() + self.early_exit_window
        while True:
            code = result.process.poll()
            if code is not None:
                result.exit_code = code
                return result
            if self._clock() >= deadline:
                return result
            self._sleep(self.poll_interval)

    def launch(self, plan: LaunchPlan, paths: InstancePaths) -> RunResult:
        return self.wait_early_exit(self.spawn(plan, paths))

    @staticmethod
    def monitor(result: RunResult, on_exit: Callable[[int], None]) -> threading.Thread:
        """Wait for the process in a daemon thread and hand its exit code to `on_exit`."""
        def _watch() -> None:
            on_exit(result.process.wait())

        thread = threading.Thread(target=_watch, name=f"mcruntime-monitor-{result.pid}", daemon=True)
        thread.start()
        return thread


# escalation
class EscalationStage(str, Enum):
    INITIAL = "initial"
    REBUILT = "rebuilt"
    SAFE_MODE = "safe_mode"
    PURGED = "purged"
    EXHAUSTED = "exhausted"


class EscalationAction(str, Enum):
    REBUILD = "rebuild"
    SAFE_MODE = "safe_mode"
    PURGE_AND_REBUILD = "purge_and_rebuild"
    SURFACE = "surface"
    GIVE_UP = "give_up"


class EscalationMachine:
    """
    Decides what to do after each failed attempt. Stages only move forward
    and the number of attempts is bounded, so a session always terminates.
    """

    def __init__(self, *, max_attempts: int = DEFAULT_MAX_ATTEMPTS):
        self.max_attempts = max(1, int(max_attempts))
        self.stage = EscalationStage.INITIAL
        self.attempts = 0
        self.validation_rebuilt = False
        self.last_fingerprint: Optional[str] = None
        self.history: List[Tuple[EscalationStage, EscalationAction]] = []

    @property
    def safe_mode(self) -> bool:
        return self.stage is EscalationStage.SAFE_MODE

    def _move(self, stage: EscalationStage, action: EscalationAction) -> EscalationAction:
        logger.debug("Escalation %s -> %s (%s)", self.stage.value, stage.value, action.value)
        self.stage = stage
        self.history.append((stage, action))
        return action

    def on_validation_failure(self) -> EscalationAction:
        """A failing pre-flight earns exactly one forced rebuild."""
        if self.validation_rebuilt:
            return EscalationAction.GIVE_UP
        self.validation_rebuilt = True
        self.history.append((self.stage, EscalationAction.REBUILD))
        return EscalationAction.REBUILD

    def on_crash(self, diagnostic: LoaderCrashDiagnostic, *, has_mods: bool) -> EscalationAction:
        self.attempts += 1
        previous, self.last_fingerprint = self.last_fingerprint, diagnostic.fingerprint
        vanilla = LoaderKind.parse(diagnostic.loader) is LoaderKind.VANILLA
        if vanilla and diagnostic.classification is not CrashClassification.CORRUPT_MINECRAFT_JAR:
            return self._move(EscalationStage.EXHAUSTED, EscalationAction.SURFACE)
        if self.attempts >= self.max_attempts:
            return self._move(EscalationStage.EXHAUSTED, EscalationAction.GIVE_UP)

        if self.stage is EscalationStage.INITIAL:
            return self._move(EscalationStage.REBUILT, EscalationAction.REBUILD)
        if self.stage is EscalationStage.REBUILT:
            if diagnostic.fingerprint == previous and has_mods and not vanilla:
                return self._move(EscalationStage.SAFE_MODE, EscalationAction.SAFE_MODE)
            return self._move(EscalationStage.PURGED, EscalationAction.PURGE_AND_REBUILD)
        if self.stage is EscalationStage.SAFE_MODE:
            return self._move(EscalationStage.PURGED, EscalationAction.PURGE_AND_REBUILD)
        return self._move(EscalationStage.EXHAUSTED, EscalationAction.GIVE_UP)


# launch loop
class LaunchSession:
    """
    Drive one launch request to a running game or a RuntimeCrash.

    Parameters
    ----------
    instance_id : str
        Instance being launched (diagnostics, state document).
    paths : InstancePaths
        Instance files.
    launcher : ProcessLauncher
        Spawns and watches the process.
    build_plan : Callable[[bool], LaunchPlan]
        Returns a plan; ``True`` forces a full runtime rebuild.
    validate : Callable[[LaunchPlan], ValidationReport]
        Pre-flight checks of a plan.
    purge : Callable[[LaunchPlan], None]
        Deletes the cached version tree of the plan's game version.
    state : InstanceStateStore
        Receives phase changes and events.
    """

    def __init__(self,
                 *,
                 instance_id: str,
                 paths: InstancePaths,
                 launcher: ProcessLauncher,
                 build_plan: Callable[[bool], LaunchPlan],
                 validate: Callable[[LaunchPlan], ValidationReport],
                 purge: Callable[[LaunchPlan], None],
                 state: InstanceStateStore,
                 min_jar_bytes: int = DEFAULT_MIN_CLIENT_JAR_BYTES,
                 max_attempts: int = DEFAULT_MAX_ATTEMPTS):
        self.instance_id = instance_id
        self.paths = paths
        self.launcher = launcher
        self.build_plan = build_plan
        self.validate = validate
        self.purge = purge
        self.state = state
        self.min_jar_bytes = min_jar_bytes
        self.machine = EscalationMachine(max_attempts=max_attempts)
        self.diagnostics: List[LoaderCrashDiagnostic] = []
        self.artifacts: List[str] = []
        self.warnings: List[str] = []

    def _record_exit(self, result: RunResult,
                     guard: Optional[ModsAsideGuard] = None) -> Callable[[int], None]:
        def _on_exit(code: int) -> None:
            if guard is not None:
                guard.release()
            status = LaunchState.FINISHED if code == 0 else LaunchState.CRASHED
            self.state.set(status, pid=result.pid, exitCode=code)
            logger.info("Instance %s exited with code %s", self.instance_id, code)
        return _on_exit

    def _diagnose(self, plan: LaunchPlan, result: RunResult, safe_mode: bool) -> LoaderCrashDiagnostic:
        logs: List[Path] = [result.stdout_path, result.stderr_path]
        logs += recent_crash_reports(self.paths.crash_reports_dir, result.started_at)[:1]
        diag = diagnose_crash(plan, instance_id=self.instance_id, exit_code=result.exit_code, logs=logs,
                              safe_mode=safe_mode, min_jar_bytes=self.min_jar_bytes)
        path = write_diagnostic(diag, self.paths.diagnostics_dir)
        self.diagnostics.append(diag)
        self.artifacts.append(str(path))
        self.state.event("crash", classification=diag.classification, fingerprint=diag.fingerprint,
                         exitCode=result.exit_code, safeMode=safe_mode, diagnostic=path)
        return diag

    def _fail(self, message: str, diag: LoaderCrashDiagnostic) -> RuntimeCrash:
        self.state.set(LaunchState.CRASHED, classification=diag.classification, fingerprint=diag.fingerprint,
                       diagnostics=self.artifacts)
        logger.error("%s (%s)", message, diag.classification.value)
        return RuntimeCrash(message, diagnostics=list(self.diagnostics), artifacts=list(self.artifacts),
                            context={"instance": self.instance_id, "classification": diag.classification.value},
                            hint=f"See {self.artifacts[-1]} and the run logs in {self.paths.logs_dir}.")

    def run(self) -> LaunchOutcome:
        """
        Raises
        ------
        ValidationFailure
            Pre-flight still fails after the forced rebuild.
        ProcessLaunchFailure
            Java could not be started.
        RuntimeCrash
            The game kept crashing early and escalation is exhausted.
        """
        ModsAsideGuard.restore_stale(self.paths.mods_dir)
        force = False
        while True:
            plan = self.build_plan(force)
            force = False
            report = self.validate(plan)
            if not report.ok:
                if self.machine.on_validation_failure() is EscalationAction.REBUILD:
                    logger.warning("Pre-flight failed (%s); rebuilding the runtime", report.summary())
                    self.warnings.append(f"pre-flight failed, runtime rebuilt: {report.summary()}")
                    self.state.event("validation_failed", errors=report.errors, action="rebuild")
                    force = True
                    continue
                self.state.set(LaunchState.FAILED, errors=report.errors)
                raise ValidationFailure(f"Pre-flight validation failed: {report.summary()}", report,
                                        context={"instance": self.instance_id})
            self.warnings += [w for w in report.warnings if w not in self.warnings]

            safe_mode = self.machine.safe_mode
            self.state.set(LaunchState.LAUNCHING, safeMode=safe_mode, attempt=self.machine.attempts + 1)
            guard = ModsAsideGuard(self.paths.mods_dir).acquire() if safe_mode else None
            try:
                result = self.launcher.launch(plan, self.paths)
            except Exception:
                if guard is not None:
                    guard.release()
                raise
            # a safe-mode game still running keeps its mods aside until it exits
            if guard is not None and not result.running:
                guard.release()

            if result.running or result.exit_code == 0:
                return self._succeeded(plan, result, safe_mode, guard)

            diag = self._diagnose(plan, result, safe_mode)
            has_mods = bool(list_mod_files(self.paths.mods_dir))
            action = self.machine.on_crash(diag, has_mods=has_mods)
            self.state.event("escalation", action=action, stage=self.machine.stage)
            if action is EscalationAction.SURFACE:
                raise self._fail(f"Minecraft {plan.minecraft_version} crashed on start", diag)
            if action is EscalationAction.GIVE_UP:
                raise self._fail(f"Launch of {self.instance_id} still crashes after recovery attempts", diag)
            if action is EscalationAction.REBUILD:
                logger.warning("Early crash (%s); rebuilding the runtime", diag.classification.value)
                force = True
            elif action is EscalationAction.SAFE_MODE:
                logger.warning("Same crash after rebuild; retrying without mods")
            elif action is EscalationAction.PURGE_AND_REBUILD:
                logger.warning("Crash persists; purging the %s version tree", plan.minecraft_version)
                self.purge(plan)
                force = True

    def _succeeded(self, plan: LaunchPlan, result: RunResult, safe_mode: bool,
                   guard: Optional[ModsAsideGuard] = None) -> LaunchOutcome:
        classification = None
        if safe_mode:
            classification = CrashClassification.MOD_EARLY_BOOT_INCOMPATIBILITY
            self.warnings.append("the game starts without mods: one or more mods fail during early boot")
        if result.running:
            self.state.set(LaunchState.RUNNING, pid=result.pid, safeMode=safe_mode)
            self.launcher.monitor(result, self._record_exit(result, guard))
        else:
            self.state.set(LaunchState.FINISHED, pid=result.pid, exitCode=result.exit_code)
        return LaunchOutcome(
            pid=result.pid,
            attempts=self.machine.attempts + 1,
            safe_mode=safe_mode,
            classification=classification,
            diagnostics=list(self.artifacts),
            stdout_path=result.stdout_path,
            stderr_path=result.stderr_path,
            warnings=list(self.warnings),
            process=result.process,
        )
