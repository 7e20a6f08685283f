from __future__ import annotations
from typing import Any, Optional

# ====== Errors ======
# Concept failures never show up here: they travel as {"error": ...} dicts.

class SyncEngineError(RuntimeError):
    pass

class UnboundSymbolError(SyncEngineError):
    """A stage read a symbol the frame never bound.

    Not a KeyError, so Mapping-style ``get(key, default)`` cannot turn a
    missing binding into a silent None.
    """
    def __init__(self, symbol: Any, bound: Optional[list] = None):
        self.symbol = symbol
        self.bound = list(bound or [])
        super().__init__(self._describe())
    def _describe(self) -> str:
        names = ", ".join(map(repr, self.bound)) or "nothing"
        return f"{self.symbol!r} is not bound (bound: {names})"

class InapplicableSymbolError(UnboundSymbolError):
    def _describe(self) -> str:
        return f"{self.symbol!r} is bound to NA and cannot be used as a value"

class DroppedBindingError(SyncEngineError):
    def __init__(self, missing: list):
        self.missing = missing
        super().__init__(f"map dropped bindings: {', '.join(map(repr, missing))}")

class _Attributed(SyncEngineError):
    """Failure that aborts one sync's evaluation; knows which sync and flow."""
    def __init__(self, message: str, *, sync: Optional[str] = None, flow: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.sync = sync
        self.flow = flow
    def attribute(self, sync: str, flow: str) -> "_Attributed":
        self.sync, self.flow = sync, flow
        return self
    def __str__(self) -> str:
        if self.sync is None:
            return self.message
        return f"{self.message} [sync={self.sync} flow={self.flow}]"

class AdapterError(_Attributed):
    pass

class ActionError(_Attributed):
    pass

class StageError(_Attributed):
    """A where predicate or map function raised something other than an engine error."""

class UnknownActionError(SyncEngineError, LookupError):
    pass

class FlowLimitExceeded(SyncEngineError):
    def __init__(self, flow: str, limit: int):
        self.flow = flow
        self.limit = limit
        super().__init__(f"flow {flow} exceeded {limit} actions; a sync is probably retriggering itself")
