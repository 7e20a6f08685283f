from __future__ import annotations
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Mapping, Sequence, Union
import logging

from errors import AdapterError
from frames import NA

if TYPE_CHECKING:
    from engine import Engine

logger = logging.getLogger(__name__)

# ====== Outcomes ======
# Concepts answer with a plain dict that either carries "error" or doesn't.
# Adapters turn that into Ok | Err first and only then into query rows.

@dataclass(frozen=True)
class Ok:
    value: Dict[str, Any] = field(default_factory=dict)

@dataclass(frozen=True)
class Err:
    error: str

Outcome = Union[Ok, Err]

def outcome_of(result: Any) -> Outcome:
    if not isinstance(result, Mapping):
        raise AdapterError(f"concept returned {type(result).__name__}, expected a mapping")
    if "error" in result:
        return Err(str(result["error"]))
    return Ok(dict(result))

def rows_of(outcome: Outcome, fields: Sequence[str]) -> List[Dict[str, Any]]:
    """A single row that sets every success field and ``error``.

    Whichever arm does not apply is filled with NA, so a sync binding both
    arms always gets both symbols.
    """
    if isinstance(outcome, Ok):
        missing = [f for f in fields if f not in outcome.value]
        if missing:
            raise AdapterError(f"success result is missing {', '.join(missing)}")
        row: Dict[str, Any] = {f: outcome.value[f] for f in fields}
        row["error"] = NA
        return [row]
    if isinstance(outcome, Err):
        row = {f: NA for f in fields}
        row["error"] = outcome.error
        return [row]
    raise TypeError(f"not an outcome: {outcome!r}")

def outcome_adapter(call: Callable[..., Awaitable[Mapping[str, Any]]], fields: Sequence[str],
                    name: str = "") -> Callable[[Dict[str, Any]], Awaitable[List[Dict[str, Any]]]]:
    """Wrap ``call(**args)`` for ``query``: always exactly one row, both arms set."""
    async def adapter(args: Dict[str, Any]) -> List[Dict[str, Any]]:
        outcome = outcome_of(await call(**args))
        if isinstance(outcome, Err):
            logger.debug("adapter %s: error %s", adapter.__name__, outcome.error)
        return rows_of(outcome, fields)
    adapter.__name__ = name or getattr(call, "__name__", "adapter")
    return adapter

def concept_adapter(engine: "Engine", concept: str, name: str, fields: Sequence[str]):
    """Adapter over a concept action or query (``_`` prefix), called unrecorded."""
    async def call(**args: Any) -> Mapping[str, Any]:
        if name.startswith("_"):
            return await engine.query(concept, name, **args)
        return await engine.call(concept, name, **args)
    return outcome_adapter(call, fields, name=f"{concept}.{name}")

MISSING_TOKEN = "Token is required for authentication."

def token_adapter(engine: "Engine"):
    """``UserAuthentication.verify`` for ``query``; an empty token never reaches the concept."""
    verify = concept_adapter(engine, "UserAuthentication", "verify", ["user"])
    async def adapter(args: Dict[str, Any]) -> List[Dict[str, Any]]:
        if not args.get("token"):
            logger.debug("adapter %s: missing token", adapter.__name__)
            return rows_of(Err(MISSING_TOKEN), ["user"])
        return await verify(args)
    adapter.__name__ = verify.__name__
    return adapter
