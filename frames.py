from __future__ import annotations
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple, Union
import asyncio, inspect

from errors import AdapterError, DroppedBindingError, InapplicableSymbolError, SyncEngineError, UnboundSymbolError

# ====== Symbols ======

@dataclass(frozen=True, eq=False)
class Symbol:
    """A logical variable of one sync.

    Compared by identity: two syncs that both say ``request`` get two different
    symbols, so bindings can never leak from one rule into another.
    """
    name: str
    def __repr__(self) -> str:
        return f"${self.name}"

def symbols(names: str) -> Union[Symbol, Tuple[Symbol, ...]]:
    """Fresh symbols for one sync: ``request, user = symbols("request user")``."""
    made = tuple(Symbol(n) for n in names.replace(",", " ").split())
    return made[0] if len(made) == 1 else made

class _NotApplicable:
    """Placeholder for an outcome branch that does not apply to a row."""
    _instance: Optional["_NotApplicable"] = None
    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance
    def __repr__(self) -> str:
        return "NA"
    def __bool__(self) -> bool:
        return False
    def __reduce__(self):
        return (_NotApplicable, ())
    def __copy__(self):
        return self
    def __deepcopy__(self, memo):
        return self

NA = _NotApplicable()

# ====== Frames ======

class Frame:
    """Immutable Symbol -> value bindings for one candidate execution path."""
    __slots__ = ("_vars",)
    def __init__(self, bindings: Optional[Mapping[Symbol, Any]] = None):
        self._vars: Mapping[Symbol, Any] = MappingProxyType(dict(bindings or {}))
    def __getitem__(self, var: Symbol) -> Any:
        try:
            return self._vars[var]
        except KeyError:
            raise UnboundSymbolError(var, list(self._vars)) from None
    def get(self, var: Symbol) -> Any:
        return self[var]
    def try_get(self, var: Symbol, default: Any = None) -> Any:
        # explicit opt-in for optional bindings; everything else goes through []
        return self._vars.get(var, default)
    def __contains__(self, var: object) -> bool:
        return var in self._vars
    def __iter__(self) -> Iterator[Symbol]:
        return iter(self._vars)
    def __len__(self) -> int:
        return len(self._vars)
    def items(self):
        return self._vars.items()
    def bind(self, var: Symbol, value: Any) -> "Frame":
        return Frame({**self._vars, var: value})
    def extend(self, bindings: Mapping[Symbol, Any]) -> "Frame":
        if not bindings:
            return self
        return Frame({**self._vars, **bindings})
    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Frame):
            return NotImplemented
        return dict(self._vars) == dict(other._vars)
    __hash__ = None  # type: ignore[assignment]
    def __repr__(self) -> str:
        inner = ", ".join(f"{k!r}: {v!r}" for k, v in self._vars.items())
        return f"Frame({{{inner}}})"

def substitute(template: Any, frame: Frame) -> Any:
    """Replace every Symbol in a (nested) template with its bound value."""
    if isinstance(template, Symbol):
        value = frame[template]
        if value is NA:
            raise InapplicableSymbolError(template, list(frame))
        return value
    if isinstance(template, Mapping):
        return {k: substitute(v, frame) for k, v in template.items()}
    if isinstance(template, (list, tuple)):
        return [substitute(v, frame) for v in template]
    return template

def applicable(var: Symbol) -> Callable[[Frame], bool]:
    """Filter predicate: keep frames whose ``var`` holds a real value."""
    def pred(frame: Frame) -> bool:
        return frame[var] is not NA
    pred.__name__ = f"applicable({var!r})"
    return pred

def bound(*vars: Symbol) -> Callable[[Frame], bool]:
    """Filter predicate for optional inputs: every ``var`` was matched at all."""
    def pred(frame: Frame) -> bool:
        return all(v in frame for v in vars)
    pred.__name__ = f"bound({', '.join(map(repr, vars))})"
    return pred

def inapplicable(var: Symbol) -> Callable[[Frame], bool]:
    def pred(frame: Frame) -> bool:
        return frame[var] is NA
    pred.__name__ = f"inapplicable({var!r})"
    return pred

Adapter = Callable[[Dict[str, Any]], Union[Awaitable[List[Mapping[str, Any]]], List[Mapping[str, Any]]]]

class Frames:
    """Ordered, immutable collection of frames. Empty means no continuation."""
    def __init__(self, frames: Iterable[Frame] = ()):
        self._frames: Tuple[Frame, ...] = tuple(frames)
    def __len__(self) -> int:
        return len(self._frames)
    def __iter__(self) -> Iterator[Frame]:
        return iter(self._frames)
    def __getitem__(self, i: int) -> Frame:
        return self._frames[i]
    def __bool__(self) -> bool:
        return bool(self._frames)
    def __add__(self, other: "Frames") -> "Frames":
        return Frames(self._frames + tuple(other))
    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Frames):
            return NotImplemented
        return self._frames == other._frames
    __hash__ = None  # type: ignore[assignment]
    def __repr__(self) -> str:
        return f"Frames({list(self._frames)!r})"

    def filter(self, pred: Callable[[Frame], bool]) -> "Frames":
        return Frames(f for f in self._frames if pred(f))

    def map(self, fn: Callable[[Frame], Mapping[Symbol, Any]]) -> "Frames":
        out: List[Frame] = []
        for frame in self._frames:
            result = fn(frame)
            bindings = dict(result.items())
            missing = [v for v in frame if v not in bindings]
            if missing:
                raise DroppedBindingError(missing)
            out.append(Frame(bindings))
        return Frames(out)

    async def query(self, adapter: Adapter, input_template: Mapping[str, Any],
                    output_pattern: Mapping[str, Any]) -> "Frames":
        """Join each frame with the rows ``adapter`` returns for it.

        A frame with no rows disappears; a frame with N rows becomes N frames.
        Rows only bind the fields they actually carry.
        """
        async def extend_one(frame: Frame) -> List[Frame]:
            args = substitute(input_template, frame)
            rows = await _call_adapter(adapter, args)
            out: List[Frame] = []
            for row in rows:
                extended = unify(output_pattern, row, frame, required=False)
                if extended is not None:
                    out.append(extended)
            return out
        # every call runs to completion even if a sibling fails
        results = await asyncio.gather(*(extend_one(f) for f in self._frames), return_exceptions=True)
        merged: List[Frame] = []
        for res in results:
            if isinstance(res, BaseException):
                raise res
            merged.extend(res)
        return Frames(merged)

def _adapter_name(adapter: Any) -> str:
    return getattr(adapter, "__name__", None) or type(adapter).__name__

async def _call_adapter(adapter: Adapter, args: Dict[str, Any]) -> List[Mapping[str, Any]]:
    try:
        rows = adapter(args)
        if inspect.isawaitable(rows):
            rows = await rows
    except SyncEngineError:
        raise
    except Exception as e:
        raise AdapterError(f"adapter {_adapter_name(adapter)} failed: {e!r}") from e
    if not isinstance(rows, (list, tuple)):
        raise AdapterError(f"adapter {_adapter_name(adapter)} returned {type(rows).__name__}, expected a list of rows")
    for row in rows:
        if not isinstance(row, Mapping):
            raise AdapterError(f"adapter {_adapter_name(adapter)} returned a {type(row).__name__} row")
    return list(rows)

def unify(pattern: Mapping[str, Any], data: Mapping[str, Any], frame: Frame, *,
          required: bool = True) -> Optional[Frame]:
    """Extend ``frame`` so ``pattern`` matches ``data``, or None on mismatch.

    Literals must be equal. A symbol binds on first sight and must agree with
    its earlier value afterwards. A field missing from ``data`` is a mismatch
    when ``required``; otherwise its symbol is simply left unbound. An NA
    literal matches only a missing (or NA) field.
    """
    new: Dict[Symbol, Any] = {}
    for field, want in pattern.items():
        if field not in data:
            if want is NA or (isinstance(want, Symbol) and not required):
                continue
            return None
        got = data[field]
        if isinstance(want, Symbol):
            if want in frame:
                if frame[want] != got:
                    return None
            elif want in new:
                if new[want] != got:
                    return None
            else:
                new[want] = got
        elif want != got:
            return None
    return frame.extend(new)
