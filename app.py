from __future__ import annotations
from typing import Any, Dict, Optional, Tuple
from flask import Flask, jsonify, request
import asyncio, logging

from concepts import AnimalIdentity, HerdGrouping, Requesting, UserAuthentication
from config import Settings, get_settings
from engine import Engine
from errors import FlowLimitExceeded, UnknownActionError
from sync import make_syncs

logger = logging.getLogger(__name__)

# Routes answered straight by the concept, each with the reason it is safe to expose.
PASSTHROUGH_INCLUSIONS: Dict[str, str] = {
    "/UserAuthentication/_getUsername": "usernames are public",
}

# Routes that always go through Requesting.request and the syncs.
PASSTHROUGH_EXCLUSIONS = [
    "/UserAuthentication/register",
    "/UserAuthentication/login",
    "/UserAuthentication/verify",
    "/UserAuthentication/logout",
    "/HerdGrouping/createHerd",
    "/HerdGrouping/addAnimal",
    "/HerdGrouping/removeAnimal",
    "/HerdGrouping/moveAnimal",
    "/HerdGrouping/mergeHerds",
    "/HerdGrouping/splitHerd",
    "/HerdGrouping/deleteHerd",
    "/HerdGrouping/restoreHerd",
    "/HerdGrouping/_viewComposition",
    "/HerdGrouping/_listActiveHerds",
    "/HerdGrouping/_listArchivedHerds",
    "/AnimalIdentity/registerAnimal",
    "/AnimalIdentity/updateStatus",
    "/AnimalIdentity/markAsDeceased",
    "/AnimalIdentity/editDetails",
    "/AnimalIdentity/markAsTransferred",
    "/AnimalIdentity/markAsSold",
    "/AnimalIdentity/removeAnimal",
    "/AnimalIdentity/_getAnimal",
    "/AnimalIdentity/_getAllAnimals",
]

# ====== Build & Run ======

def build_engine(settings: Optional[Settings] = None) -> Engine:
    settings = settings or get_settings()
    eng = Engine(max_flow_events=settings.max_flow_events, max_retained_flows=settings.max_retained_flows)
    eng.register_concept(Requesting("Requesting", max_requests=settings.max_retained_requests))
    eng.register_concept(UserAuthentication("UserAuthentication"))
    eng.register_concept(HerdGrouping("HerdGrouping"))
    eng.register_concept(AnimalIdentity("AnimalIdentity"))
    eng.register_terminal("Requesting", "respond", key="request")
    for s in make_syncs(eng):
        eng.register_sync(s)
    return eng

def is_passthrough(route: str) -> bool:
    if route in PASSTHROUGH_EXCLUSIONS:
        return False
    if route in PASSTHROUGH_INCLUSIONS:
        return True
    logger.warning("route %s is neither included nor excluded; handling it through Requesting", route)
    return False

def make_app(eng: Engine, settings: Optional[Settings] = None) -> Flask:
    settings = settings or get_settings()
    app = Flask(__name__)

    async def passthrough(concept: str, action: str, body: Dict[str, Any]) -> Tuple[Any, int]:
        try:
            if action.startswith("_"):
                out = await eng.query(concept, action, **body)
            else:
                out = await eng.call(concept, action, **body)
        except UnknownActionError as e:
            return {"error": str(e)}, 404
        except TypeError as e:
            return {"error": f"Bad arguments for /{concept}/{action}: {e}"}, 400
        return out, (400 if "error" in out else 200)

    async def through_requesting(route: str, body: Dict[str, Any]) -> Tuple[Any, int]:
        flow = eng.start_flow()
        try:
            rec = await asyncio.wait_for(eng.invoke("Requesting", "request", {**body, "path": route}, flow=flow),
                                         settings.request_timeout_seconds)
            res = await eng.query("Requesting", "_getResponse", request=rec.output["request"])
        except asyncio.TimeoutError:
            logger.warning("request to %s timed out", route, extra={"flow": flow})
            return {"error": f"Request timed out after {settings.request_timeout_seconds:g}s."}, 504
        except FlowLimitExceeded as e:
            logger.error("%s", e, extra={"flow": flow})
            return {"error": "Internal error while handling the request."}, 500
        except TypeError as e:
            logger.warning("bad fields for %s: %s", route, e, extra={"flow": flow})
            return {"error": f"Bad request fields for {route}."}, 400
        finally:
            eng.end_flow(flow)
        if "error" in res:
            # the flow finished without any sync answering
            logger.warning("no sync responded to %s", route, extra={"flow": flow})
            return {"error": f"No response for {route}."}, 504
        payload = res["body"]
        return payload, (400 if "error" in payload else 200)

    @app.post(f"{settings.api_base_url}/<concept>/<action>")
    async def handle(concept: str, action: str):
        body = request.get_json(silent=True)
        if body is None:
            body = {}
        if not isinstance(body, dict):
            return jsonify({"error": "Request body must be a JSON object."}), 400
        route = f"/{concept}/{action}"
        if is_passthrough(route):
            payload, status = await passthrough(concept, action, body)
        else:
            payload, status = await through_requesting(route, body)
        return jsonify(payload), status

    return app
