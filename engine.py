from __future__ import annotations
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple, Union
from uuid import uuid4
import asyncio, inspect, logging, threading, time

from errors import (ActionError, AdapterError, DroppedBindingError, FlowLimitExceeded, StageError,
                    SyncEngineError, UnboundSymbolError, UnknownActionError)
from frames import Adapter, Frame, Frames, Symbol, substitute, unify

logger = logging.getLogger(__name__)

# ====== Engine ======

@dataclass
class ActionRecord:
    """One completed invocation of a concept action, inside one flow (round)."""
    id: str
    concept: str
    action: str
    input: Dict[str, Any]
    output: Optional[Dict[str, Any]]
    flow: str
    t: float = field(default_factory=lambda: time.time())
    @property
    def name(self) -> str:
        return f"{self.concept}.{self.action}"

class Concept:
    """Base class for concepts: public async methods are actions, ``_`` ones are queries."""
    def __init__(self, name: str):
        self.name = name
    def _lookup(self, name: str) -> Callable[..., Any]:
        fn = getattr(self, name, None) if not name.startswith("__") else None
        if fn is None or not callable(fn):
            raise UnknownActionError(f"{self.name}.{name} not found")
        return fn
    async def perform(self, action: str, input_map: Mapping[str, Any]) -> Dict[str, Any]:
        fn = self._lookup(action)
        result = fn(**input_map)
        if inspect.isawaitable(result):
            result = await result
        if not isinstance(result, Mapping):
            raise TypeError(f"{self.name}.{action} returned {type(result).__name__}, expected a mapping")
        return dict(result)
    async def query(self, qname: str, input_map: Mapping[str, Any]) -> Dict[str, Any]:
        if not qname.startswith("_"):
            raise ValueError("Query names must start with '_' to be pure")
        return await self.perform(qname, input_map)

@dataclass
class WhenPattern:
    """Matches one completed action. ``inputs``/``outputs`` map field -> literal or Symbol.

    Input fields left out of the pattern are ignored, and a symbol naming an
    input field the action did not receive stays unbound. Literal inputs and
    every output field named in the pattern must be present in the record.
    """
    concept: str
    action: str
    inputs: Dict[str, Any] = field(default_factory=dict)
    outputs: Dict[str, Any] = field(default_factory=dict)
    def match(self, rec: ActionRecord, frame: Frame) -> Optional[Frame]:
        if rec.concept != self.concept or rec.action != self.action or rec.output is None:
            return None
        extended = unify(self.inputs, rec.input, frame, required=False)
        if extended is None:
            return None
        return unify(self.outputs, rec.output, extended)
    def symbols(self) -> Set[Symbol]:
        return {v for v in (*self.inputs.values(), *self.outputs.values()) if isinstance(v, Symbol)}

def _combinations(when: Sequence[WhenPattern], records: Sequence[ActionRecord]) -> List[Tuple[Frame, Tuple[str, ...]]]:
    # join the patterns left to right; each record is used at most once per combination
    partial: List[Tuple[Frame, Tuple[str, ...]]] = [(Frame(), ())]
    for pat in when:
        joined = []
        for frame, used in partial:
            for rec in records:
                if rec.id in used:
                    continue
                matched = pat.match(rec, frame)
                if matched is not None:
                    joined.append((matched, used + (rec.id,)))
        partial = joined
        if not partial:
            break
    return partial

def match_when(when: Sequence[WhenPattern], records: Sequence[ActionRecord]) -> Frames:
    """Every consistent frame the conjunction ``when`` admits over ``records``."""
    return Frames(f for f, _ in _combinations(when, records))

# ====== Where stages ======

@dataclass(frozen=True)
class Filter:
    pred: Callable[[Frame], bool]
    async def apply(self, frames: Frames) -> Frames:
        return frames.filter(self.pred)

@dataclass(frozen=True)
class Map:
    fn: Callable[[Frame], Mapping[Symbol, Any]]
    async def apply(self, frames: Frames) -> Frames:
        return frames.map(self.fn)

@dataclass(frozen=True)
class Query:
    adapter: Adapter
    inputs: Mapping[str, Any]
    outputs: Mapping[str, Any]
    async def apply(self, frames: Frames) -> Frames:
        return await frames.query(self.adapter, self.inputs, self.outputs)

async def run_where(stages: Iterable[Any], frames: Frames) -> Frames:
    for stage in stages:
        if not frames:
            break
        frames = await stage.apply(frames)
    return frames

# ====== Syncs ======

@dataclass(frozen=True)
class ActionTemplate:
    concept: str
    action: str
    args: Mapping[str, Any]

@dataclass
class Sync:
    name: str
    when: List[WhenPattern]
    where: List[Any] = field(default_factory=list)
    then: List[Union[ActionTemplate, Tuple[str, str, Mapping[str, Any]]]] = field(default_factory=list)
    def __post_init__(self):
        if not self.when:
            raise ValueError(f"sync {self.name} needs at least one when pattern")
        self.then = [t if isinstance(t, ActionTemplate) else ActionTemplate(*t) for t in self.then]

@dataclass
class SyncFault:
    sync: str
    flow: str
    error: BaseException
    @property
    def kind(self) -> str:
        return type(self.error).__name__

# these abort the sync being evaluated, never the flow
_SYNC_FAULTS = (UnboundSymbolError, DroppedBindingError, AdapterError, ActionError, StageError, UnknownActionError)

@dataclass
class _FlowState:
    id: str
    records: List[ActionRecord] = field(default_factory=list)
    pending: Deque[ActionRecord] = field(default_factory=deque)
    fired: Set[Tuple[str, Tuple[str, ...]]] = field(default_factory=set)
    terminal: Set[Tuple[str, str, Any]] = field(default_factory=set)
    faults: List[SyncFault] = field(default_factory=list)
    draining: bool = False

class Engine:
    def __init__(self, max_flow_events: int = 256, max_retained_flows: int = 1024):
        self.concepts: Dict[str, Concept] = {}
        self.syncs: List[Sync] = []
        self.max_flow_events = max_flow_events
        self.max_retained_flows = max_retained_flows
        self._flows: Dict[str, _FlowState] = {}
        self._terminals: Dict[Tuple[str, str], str] = {}
        self._lock = threading.Lock()
    def register_concept(self, concept: Concept) -> None:
        self.concepts[concept.name] = concept
    def register_sync(self, sync: Sync) -> None:
        if any(s.name == sync.name for s in self.syncs):
            raise ValueError(f"sync {sync.name} already registered")
        self.syncs.append(sync)
    def register_terminal(self, concept: str, action: str, key: str = "request") -> None:
        """Mark an action as a once-per-``key`` response within a flow."""
        self._terminals[(concept, action)] = key
    def start_flow(self) -> str:
        flow = str(uuid4())
        with self._lock:
            self._flows[flow] = _FlowState(flow)
            self._evict(keep=flow)
        return flow
    def end_flow(self, flow: str) -> None:
        with self._lock:
            self._flows.pop(flow, None)
    def flow_log(self, flow: str) -> List[ActionRecord]:
        with self._lock:
            return list(self._state(flow).records)
    def faults(self, flow: str) -> List[SyncFault]:
        with self._lock:
            return list(self._state(flow).faults)

    async def invoke(self, concept: str, action: str, input_map: Mapping[str, Any], *,
                     flow: Optional[str] = None) -> ActionRecord:
        """Perform an action, record it, and run the flow until no sync fires."""
        if flow is None:
            flow = self.start_flow()
        rec = await self._perform(concept, action, input_map, flow)
        await self._drain(flow)
        return rec
    async def reevaluate(self, flow: str) -> None:
        """Run every sync against the whole flow log again; fired combinations stay fired."""
        state = self._state(flow)
        for sync in self.syncs:
            await self._evaluate(sync, state, trigger=None)
        await self._drain(flow)
    async def call(self, concept: str, action: str, **kwargs: Any) -> Dict[str, Any]:
        """Unrecorded action call, for adapters."""
        return await self._concept(concept).perform(action, kwargs)
    async def query(self, concept: str, qname: str, **kwargs: Any) -> Dict[str, Any]:
        return await self._concept(concept).query(qname, kwargs)

    def _concept(self, name: str) -> Concept:
        try:
            return self.concepts[name]
        except KeyError:
            raise UnknownActionError(f"concept {name} not registered") from None
    def _evict(self, keep: str) -> None:
        # oldest idle flows go first; callers hold the lock
        excess = len(self._flows) - self.max_retained_flows
        idle = [f for f, s in self._flows.items() if not s.draining and f != keep]
        for fid in idle[:max(excess, 0)]:
            del self._flows[fid]
    def _state(self, flow: str) -> _FlowState:
        try:
            return self._flows[flow]
        except KeyError:
            raise LookupError(f"unknown flow {flow}") from None

    async def _perform(self, concept: str, action: str, input_map: Mapping[str, Any], flow: str) -> ActionRecord:
        target = self._concept(concept)
        with self._lock:
            state = self._flows.setdefault(flow, _FlowState(flow))
            if len(state.records) >= self.max_flow_events:
                raise FlowLimitExceeded(flow, self.max_flow_events)
        input_map = dict(input_map)
        output = await target.perform(action, input_map)
        rec = ActionRecord(id=str(uuid4()), concept=concept, action=action, input=input_map, output=output, flow=flow)
        with self._lock:
            state.records.append(rec)
            state.pending.append(rec)
        logger.debug("%s %s -> %s", rec.name, input_map, output, extra={"flow": flow, "concept": concept, "action": action})
        return rec

    async def _drain(self, flow: str) -> None:
        state = self._state(flow)
        if state.draining:
            # an outer invoke on this flow is already processing the queue
            return
        state.draining = True
        try:
            while state.pending:
                rec = state.pending.popleft()
                for sync in self.syncs:
                    await self._evaluate(sync, state, trigger=rec)
        finally:
            state.draining = False

    async def _evaluate(self, sync: Sync, state: _FlowState, trigger: Optional[ActionRecord]) -> None:
        fresh: List[Frame] = []
        with self._lock:
            for frame, used in _combinations(sync.when, list(state.records)):
                if trigger is not None and trigger.id not in used:
                    continue
                key = (sync.name, used)
                if key in state.fired:
                    continue
                state.fired.add(key)
                fresh.append(frame)
        if not fresh:
            return
        logger.debug("sync %s matched %d frame(s)", sync.name, len(fresh), extra={"flow": state.id, "sync": sync.name})
        try:
            try:
                frames = await run_where(sync.where, Frames(fresh))
                # resolve every template first so an unbound symbol aborts before anything fires
                calls = [[(t, substitute(t.args, frame)) for t in sync.then] for frame in frames]
            except SyncEngineError:
                raise
            except Exception as e:
                raise StageError(f"where/then of {sync.name} raised {e!r}") from e
            results = await asyncio.gather(*(self._dispatch(state, c) for c in calls), return_exceptions=True)
            for res in results:
                if isinstance(res, BaseException):
                    raise res
        except _SYNC_FAULTS as e:
            if isinstance(e, (AdapterError, ActionError, StageError)):
                e.attribute(sync.name, state.id)
            with self._lock:
                state.faults.append(SyncFault(sync.name, state.id, e))
            logger.error("sync %s aborted in flow %s: %s", sync.name, state.id, e,
                         exc_info=e, extra={"flow": state.id, "sync": sync.name})

    async def _dispatch(self, state: _FlowState, calls: List[Tuple[ActionTemplate, Dict[str, Any]]]) -> None:
        for tpl, args in calls:
            key = self._terminals.get((tpl.concept, tpl.action))
            if key is not None:
                marker = (tpl.concept, tpl.action, args.get(key))
                with self._lock:
                    seen = marker in state.terminal
                    state.terminal.add(marker)
                if seen:
                    logger.warning("refusing second %s.%s for %s=%r", tpl.concept, tpl.action, key, args.get(key),
                                   extra={"flow": state.id, "request": args.get(key)})
                    continue
            try:
                await self._perform(tpl.concept, tpl.action, args, state.id)
            except SyncEngineError:
                raise
            except Exception as e:
                raise ActionError(f"{tpl.concept}.{tpl.action} raised {e!r}") from e
