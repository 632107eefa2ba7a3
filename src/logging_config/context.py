"""Run Context Management.

Thread-safe run context using contextvars for binding run IDs,
deployment targets and versions to log entries.
"""

import uuid
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


# Context variables for run-scoped data
_run_id_var: ContextVar[str] = ContextVar("run_id", default="")
_target_var: ContextVar[str] = ContextVar("target", default="")
_version_var: ContextVar[str] = ContextVar("version", default="")
_extra_context_var: ContextVar[dict] = ContextVar("extra_context", default={})


def generate_run_id() -> str:
    """Generate a unique run ID using UUID4."""
    return str(uuid.uuid4())


def get_run_id() -> str:
    """Get the current run ID from context."""
    return _run_id_var.get()


def get_target() -> str:
    """Get the deployment target bound to the current context."""
    return _target_var.get()


def get_version() -> str:
    """Get the version bound to the current context."""
    return _version_var.get()


def get_context_dict() -> dict[str, Any]:
    """Get all context variables as a dictionary for log binding."""
    ctx = {}
    run_id = _run_id_var.get()
    if run_id:
        ctx["run_id"] = run_id
    target = _target_var.get()
    if target:
        ctx["target"] = target
    version = _version_var.get()
    if version:
        ctx["version"] = version
    extra = _extra_context_var.get()
    if extra:
        ctx.update(extra)
    return ctx


@dataclass
class RunContext:
    """Context manager for run-scoped logging context.

    Binds run_id, target and version to all log entries within the
    context. Restores the previous values on exit, so nested contexts
    (a rollback inside a run) unwind cleanly.

    Example:
        with RunContext(run_id="abc-123", target="production", version="1.2.3"):
            logger.info("deploying")  # includes run_id, target, version
    """

    run_id: str = ""
    target: str = ""
    version: str = ""
    extra: dict[str, Any] = field(default_factory=dict)
    started_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    _tokens: list = field(default_factory=list, repr=False)

    def __post_init__(self):
        if not self.run_id:
            self.run_id = generate_run_id()

    def __enter__(self) -> "RunContext":
        self._tokens = [
            (_run_id_var, _run_id_var.set(self.run_id)),
            (_target_var, _target_var.set(self.target)),
            (_version_var, _version_var.set(self.version)),
            (_extra_context_var, _extra_context_var.set(self.extra.copy())),
        ]
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens.clear()

    @property
    def elapsed_seconds(self) -> float:
        """Seconds since the context was created."""
        delta = datetime.now(timezone.utc) - self.started_at
        return delta.total_seconds()

    def bind(self, **kwargs: Any) -> None:
        """Add extra key-value pairs to the context."""
        if "version" in kwargs:
            self.version = str(kwargs.pop("version"))
            _version_var.set(self.version)
        current = _extra_context_var.get()
        updated = {**current, **kwargs}
        _extra_context_var.set(updated)
        self.extra.update(kwargs)
