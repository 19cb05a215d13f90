"""
Execution engine: walks the step list against the external engine.

Per step, in order: restart skip, enabled check, resource check, pre-step
checkpoint, merge validation, handler, merged-branch retirement. Handler
errors make the step a no-op; setup and configuration errors end the run;
memory pressure ends it resumably.
"""

import enum
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

from pixpipe_backend.config_model import PipelineConfig, Step

from . import events
from .error_handling import (
    FATAL_ERRORS,
    ConfigurationError,
    MemoryPressureAbort,
    PipelineError,
)
from .handlers import HANDLERS, StepContext
from .registry import LiveImageRegistry

logger = logging.getLogger(__name__)


class TerminalStatus(enum.Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED_RESUMABLE = "aborted_resumable"

    @property
    def exit_code(self) -> int:
        return {"completed": 0, "failed": 1, "aborted_resumable": 2}[self.value]


@dataclass
class EngineState:
    registry: LiveImageRegistry = field(default_factory=LiveImageRegistry)
    restart_from: Optional[str] = None
    restart_index: int = 0
    current_step: Optional[str] = None
    executed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    disabled: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    checkpoints: list[str] = field(default_factory=list)
    auto_stretch: dict[str, Any] = field(default_factory=dict)
    notes: dict[str, Any] = field(default_factory=dict)
    output_path: Optional[str] = None
    error: Optional[str] = None


class ExecutionEngine:
    def __init__(
        self,
        session,
        checkpoints,
        monitor=None,
        selector=None,
        handlers: Optional[dict[str, Callable]] = None,
        run_id: str = "",
        log_fp=None,
        emit_stdout: bool = True,
        stop_requested: Callable[[], bool] = lambda: False,
        output_extension: str = ".xisf",
    ):
        self.session = session
        self.checkpoints = checkpoints
        self.monitor = monitor
        self.selector = selector
        self.handlers = dict(HANDLERS if handlers is None else handlers)
        self.run_id = run_id
        self.log_fp = log_fp
        self.emit_stdout = emit_stdout
        self.stop_requested = stop_requested
        self.output_extension = output_extension
        self.state = EngineState()

    def _event(self, kind: str, extra: Optional[dict] = None) -> None:
        events.run_event(kind, self.run_id, self.log_fp, extra, stdout=self.emit_stdout)

    def _step_end(self, index: int, step: Step, status: str, extra: Optional[dict] = None) -> None:
        events.step_end(self.run_id, self.log_fp, index, step.id, status, extra, stdout=self.emit_stdout)

    def run(self, config: PipelineConfig, restart_from: Optional[str] = None) -> TerminalStatus:
        self.state = EngineState(restart_from=restart_from)
        state = self.state
        self._event("run_start", {"pipeline": config.name, "steps": len(config.steps), "restart_from": restart_from})

        status = TerminalStatus.COMPLETED
        try:
            if restart_from is not None:
                try:
                    state.restart_index = config.step_index(restart_from)
                except KeyError:
                    raise ConfigurationError(f"restart step {restart_from!r} is not in the pipeline") from None
                logger.info(f"restarting from {restart_from} (step {state.restart_index + 1}/{len(config.steps)})")
                state.registry = self.checkpoints.restore(restart_from, state.registry)

            for index, step in enumerate(config.steps):
                if self.stop_requested():
                    logger.warning(f"stop requested before {step.id}")
                    state.error = f"stopped before {step.id}"
                    status = TerminalStatus.FAILED
                    break
                if index < state.restart_index:
                    state.skipped.append(step.id)
                    self._step_end(index, step, "skipped", {"reason": "restart"})
                    continue
                if not step.enabled:
                    logger.info(f"[{step.id}] disabled, skipped")
                    state.disabled.append(step.id)
                    self._step_end(index, step, "disabled")
                    continue
                self._run_step(index, step, config)

            if status is TerminalStatus.COMPLETED:
                self._final_save(config)
        except MemoryPressureAbort as e:
            logger.error(str(e))
            state.error = str(e)
            status = TerminalStatus.ABORTED_RESUMABLE
        except FATAL_ERRORS as e:
            logger.error(f"fatal: {e}")
            state.error = str(e)
            status = TerminalStatus.FAILED
        except PipelineError as e:
            logger.error(f"run failed: {e}")
            state.error = str(e)
            status = TerminalStatus.FAILED
        except OSError as e:
            logger.error(f"run failed on the file system: {e}")
            state.error = f"{type(e).__name__}: {e}"
            status = TerminalStatus.FAILED

        self._event("run_end", {
            "status": status.value,
            "exit_code": status.exit_code,
            "executed": list(state.executed),
            "failed": dict(state.failed),
            "error": state.error,
            "output": state.output_path,
            "resume_step": state.current_step if status is TerminalStatus.ABORTED_RESUMABLE else None,
        })
        return status

    def _run_step(self, index: int, step: Step, config: PipelineConfig) -> None:
        state = self.state
        state.current_step = step.id
        events.step_start(self.run_id, self.log_fp, index, step.id,
                          {"kind": step.kind, "branch": step.branch_id}, stdout=self.emit_stdout)
        logger.info(f"[{step.id}] {step.label or step.kind} on {step.branch_id}")

        if self.monitor is not None:
            self.monitor.check(step.id)

        is_restart_step = state.restart_from is not None and index == state.restart_index
        if self.checkpoints.should_checkpoint(step) and not is_restart_step:
            try:
                self.checkpoints.save(step.id, state.registry)
                state.checkpoints.append(step.id)
                self._event("checkpoint_saved", {"step_id": step.id, "branches": state.registry.branches()})
            except (PipelineError, OSError) as e:
                logger.warning(f"[{step.id}] checkpoint failed: {e}")

        for branch in step.merges:
            if not state.registry.is_live(branch):
                raise ConfigurationError(f"step {step.id!r} merges branch {branch!r}, which has no live image")

        handler = self.handlers.get(step.kind)
        if handler is None:
            raise ConfigurationError(f"no handler for step kind {step.kind!r}")

        ctx = StepContext(step=step, config=config, state=state, session=self.session, selector=self.selector)
        try:
            handler(ctx, step.typed_params)
        except FATAL_ERRORS:
            raise
        except MemoryPressureAbort:
            raise
        except Exception as e:
            logger.warning(f"[{step.id}] step failed, continuing without it: {type(e).__name__}: {e}")
            state.failed[step.id] = str(e)
            self._step_end(index, step, "error", {"error": str(e)})
            return

        for branch in step.merges:
            try:
                state.registry.retire(branch, self.session)
            except PipelineError as e:
                logger.warning(f"[{step.id}] could not release merged branch {branch}: {e}")
                state.registry.remove(branch)

        state.executed.append(step.id)
        self._step_end(index, step, "ok", {"branches": state.registry.snapshot()})

    def _final_save(self, config: PipelineConfig) -> None:
        state = self.state
        branch = config.primary_branch
        if not state.registry.is_live(branch):
            live = state.registry.branches()
            if not live:
                raise PipelineError("nothing to save: no live branch at the end of the run")
            logger.warning(f"primary branch {branch} is not live, saving {live[0]} instead")
            branch = live[0]

        out_dir = Path(config.files.output_dir).expanduser()
        out_dir.mkdir(parents=True, exist_ok=True)
        out_path = out_dir / f"{config.files.target_name}{self.output_extension}"
        handle = state.registry.handle(branch)
        saved_as = self.session.save_image(handle, str(out_path), overwrite=True)
        if saved_as != handle:
            state.registry.register(branch, saved_as)
        state.output_path = str(out_path)
        logger.info(f"saved {branch} ({saved_as}) to {out_path}")
