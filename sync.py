# ====== Synchronizations ======
from __future__ import annotations
from typing import Dict, List, Optional, Sequence, Tuple

from adapters import MISSING_TOKEN, concept_adapter, token_adapter
from engine import Engine, Filter, Map, Query, Sync, WhenPattern
from frames import NA, Symbol, applicable, bound, inapplicable, symbols

def _request(path: str, inputs: Dict[str, object], request: Symbol) -> WhenPattern:
    return WhenPattern("Requesting", "request", {"path": path, **inputs}, {"request": request})

def _respond(args: Dict[str, object]):
    return ("Requesting", "respond", args)

def _or_empty(var: Symbol) -> Map:
    # a request that left the field out still reaches the adapter, as ""
    return Map(lambda f: {**dict(f.items()), var: f.try_get(var, "")})

def _missing(args: Dict[str, Symbol]) -> Tuple[Symbol, List[object]]:
    """Where-stages keeping only frames that lack some of ``args``, with the error message bound."""
    message = Symbol("message")
    complete = bound(*args.values())
    def describe(f):
        names = [n for n, s in args.items() if s not in f]
        return {**dict(f.items()), message: f"Missing required field(s): {', '.join(names)}."}
    return message, [Filter(lambda f: not complete(f)), Map(describe)]

def _missing_token(name: str, path: str) -> Sync:
    request = Symbol("request")
    return Sync(
        name=f"{name}.MissingToken",
        when=[_request(path, {"token": NA}, request)],
        then=[_respond({"request": request, "error": MISSING_TOKEN})],
    )

def authenticated_action(eng: Engine, concept: str, action: str, fields: Sequence[str],
                         success: Sequence[str] = (), message: Optional[str] = None,
                         optional: Sequence[str] = ()) -> List[Sync]:
    """Request -> verify token -> concept action -> respond, for one route.

    The action is called once the token resolves to a user and every field is
    present. Otherwise the request is answered with the auth error (a missing
    token included) or with the missing fields. Fields in ``optional`` are passed
    as "" when the request leaves them out. The action's success or error
    result is answered by two more rules, correlated through the field symbols.
    """
    path = f"/{concept}/{action}"
    verify = token_adapter(eng)
    syncs: List[Sync] = []

    request, token, user, auth_error = symbols("request token user auth_error")
    args = {f: Symbol(f) for f in fields}
    extras = {f: Symbol(f) for f in optional}
    syncs.append(Sync(
        name=f"{concept}.{action}.Request",
        when=[_request(path, {"token": token, **args, **extras}, request)],
        where=[_or_empty(token),
               Query(verify, {"token": token}, {"user": user, "error": auth_error}),
               Filter(applicable(user)),
               Filter(bound(*args.values())),
               *(_or_empty(s) for s in extras.values())],
        then=[(concept, action, {"user": user, **args, **extras})],
    ))

    request, token, auth_error, user = symbols("request token auth_error user")
    syncs.append(Sync(
        name=f"{concept}.{action}.AuthError",
        when=[_request(path, {"token": token}, request)],
        where=[_or_empty(token),
               Query(verify, {"token": token}, {"user": user, "error": auth_error}),
               Filter(applicable(auth_error))],
        then=[_respond({"request": request, "error": auth_error})],
    ))

    if fields:
        request, token, auth_error, user = symbols("request token auth_error user")
        args = {f: Symbol(f) for f in fields}
        missing, stages = _missing(args)
        syncs.append(Sync(
            name=f"{concept}.{action}.MissingInput",
            when=[_request(path, {"token": token, **args}, request)],
            where=[_or_empty(token),
                   Query(verify, {"token": token}, {"user": user, "error": auth_error}),
                   Filter(applicable(user)), *stages],
            then=[_respond({"request": request, "error": missing})],
        ))

    request = Symbol("request")
    args = {f: Symbol(f) for f in fields}
    out = {f: Symbol(f) for f in success}
    body = dict(out) if out else {"message": message or f"{action} succeeded."}
    syncs.append(Sync(
        name=f"{concept}.{action}.Response",
        when=[_request(path, args, request),
              WhenPattern(concept, action, args, {**out, "error": NA})],
        then=[_respond({"request": request, **body})],
    ))

    request, error = symbols("request error")
    args = {f: Symbol(f) for f in fields}
    syncs.append(Sync(
        name=f"{concept}.{action}.Error",
        when=[_request(path, args, request),
              WhenPattern(concept, action, args, {"error": error})],
        then=[_respond({"request": request, "error": error})],
    ))
    return syncs

def authenticated_query(eng: Engine, concept: str, qname: str, fields: Sequence[str],
                        result: Sequence[str]) -> List[Sync]:
    """Request -> verify token -> read-only query -> respond. The query is a join, not an action."""
    path = f"/{concept}/{qname}"
    verify = token_adapter(eng)
    read = concept_adapter(eng, concept, qname, list(result))

    def rule(suffix: str, keep, body) -> Sync:
        request, token, user, auth_error, error = symbols("request token user auth_error error")
        args = {f: Symbol(f) for f in fields}
        out = {f: Symbol(f) for f in result}
        return Sync(
            name=f"{concept}.{qname}.{suffix}",
            when=[_request(path, {"token": token, **args}, request)],
            where=[_or_empty(token),
                   Query(verify, {"token": token}, {"user": user, "error": auth_error}),
                   Filter(applicable(user)),
                   Filter(bound(*args.values())),
                   Query(read, {"user": user, **args}, {**out, "error": error}),
                   Filter(keep(error))],
            then=[_respond({"request": request, **body(out, error)})],
        )

    request, token, user, auth_error = symbols("request token user auth_error")
    denied = Sync(
        name=f"{concept}.{qname}.AuthError",
        when=[_request(path, {"token": token}, request)],
        where=[_or_empty(token),
               Query(verify, {"token": token}, {"user": user, "error": auth_error}),
               Filter(applicable(auth_error))],
        then=[_respond({"request": request, "error": auth_error})],
    )
    syncs = [rule("Result", inapplicable, lambda out, error: out),
             rule("Error", applicable, lambda out, error: {"error": error}),
             denied]
    if fields:
        request, token, user, auth_error = symbols("request token user auth_error")
        args = {f: Symbol(f) for f in fields}
        missing, stages = _missing(args)
        syncs.append(Sync(
            name=f"{concept}.{qname}.MissingInput",
            when=[_request(path, {"token": token, **args}, request)],
            where=[_or_empty(token),
                   Query(verify, {"token": token}, {"user": user, "error": auth_error}),
                   Filter(applicable(user)), *stages],
            then=[_respond({"request": request, "error": missing})],
        ))
    return syncs

def auth_syncs() -> List[Sync]:
    syncs: List[Sync] = []
    for action, inputs, result in (("register", ("username", "password"), "user"),
                                   ("login", ("username", "password"), "token")):
        path = f"/UserAuthentication/{action}"
        request = Symbol("request")
        args = {f: Symbol(f) for f in inputs}
        syncs.append(Sync(
            name=f"UserAuthentication.{action}.Request",
            when=[_request(path, args, request)],
            where=[Filter(bound(*args.values()))],
            then=[("UserAuthentication", action, args)],
        ))
        request = Symbol("request")
        args = {f: Symbol(f) for f in inputs}
        missing, stages = _missing(args)
        syncs.append(Sync(
            name=f"UserAuthentication.{action}.MissingInput",
            when=[_request(path, args, request)],
            where=stages,
            then=[_respond({"request": request, "error": missing})],
        ))
        request, value = symbols(f"request {result}")
        username = Symbol("username")
        syncs.append(Sync(
            name=f"UserAuthentication.{action}.Response",
            when=[_request(path, {"username": username}, request),
                  WhenPattern("UserAuthentication", action, {"username": username}, {result: value})],
            then=[_respond({"request": request, result: value})],
        ))
        request, error, username = symbols("request error username")
        syncs.append(Sync(
            name=f"UserAuthentication.{action}.Error",
            when=[_request(path, {"username": username}, request),
                  WhenPattern("UserAuthentication", action, {"username": username}, {"error": error})],
            then=[_respond({"request": request, "error": error})],
        ))

    path = "/UserAuthentication/logout"
    request, token = symbols("request token")
    syncs.append(Sync(
        name="UserAuthentication.logout.Request",
        when=[_request(path, {"token": token}, request)],
        where=[Filter(bound(token))],
        then=[("UserAuthentication", "logout", {"token": token})],
    ))
    request, token = symbols("request token")
    syncs.append(Sync(
        name="UserAuthentication.logout.Response",
        when=[_request(path, {"token": token}, request),
              WhenPattern("UserAuthentication", "logout", {"token": token}, {"error": NA})],
        then=[_respond({"request": request, "message": "Logged out successfully."})],
    ))
    request, token, error = symbols("request token error")
    syncs.append(Sync(
        name="UserAuthentication.logout.Error",
        when=[_request(path, {"token": token}, request),
              WhenPattern("UserAuthentication", "logout", {"token": token}, {"error": error})],
        then=[_respond({"request": request, "error": error})],
    ))
    syncs.append(_missing_token("UserAuthentication.logout", path))
    return syncs

def animal_status_syncs() -> List[Sync]:
    """Status updates authenticate through a recorded verify action instead of a query.

    The request and the verify result are two separate events joined on the
    shared ``token`` symbol. A request without a token is never verified.
    """
    path = "/AnimalIdentity/updateStatus"
    syncs: List[Sync] = []
    request, token = symbols("request token")
    syncs.append(Sync(
        name="AnimalIdentity.updateStatus.Verify",
        when=[_request(path, {"token": token}, request)],
        where=[Filter(bound(token))],
        then=[("UserAuthentication", "verify", {"token": token})],
    ))
    request, token, user, animal, status = symbols("request token user animal status")
    syncs.append(Sync(
        name="AnimalIdentity.updateStatus.Request",
        when=[_request(path, {"token": token, "animal": animal, "status": status}, request),
              WhenPattern("UserAuthentication", "verify", {"token": token}, {"user": user})],
        where=[Filter(bound(animal, status))],
        then=[("AnimalIdentity", "updateStatus", {"user": user, "animal": animal, "status": status})],
    ))
    request, token, user, animal, status = symbols("request token user animal status")
    missing, stages = _missing({"animal": animal, "status": status})
    syncs.append(Sync(
        name="AnimalIdentity.updateStatus.MissingInput",
        when=[_request(path, {"token": token, "animal": animal, "status": status}, request),
              WhenPattern("UserAuthentication", "verify", {"token": token}, {"user": user})],
        where=stages,
        then=[_respond({"request": request, "error": missing})],
    ))
    request, token, error = symbols("request token error")
    syncs.append(Sync(
        name="AnimalIdentity.updateStatus.AuthError",
        when=[_request(path, {"token": token}, request),
              WhenPattern("UserAuthentication", "verify", {"token": token}, {"error": error})],
        then=[_respond({"request": request, "error": error})],
    ))
    request, animal, status = symbols("request animal status")
    syncs.append(Sync(
        name="AnimalIdentity.updateStatus.Response",
        when=[_request(path, {"animal": animal, "status": status}, request),
              WhenPattern("AnimalIdentity", "updateStatus", {"animal": animal, "status": status}, {"error": NA})],
        then=[_respond({"request": request, "message": "Animal status updated successfully."})],
    ))
    request, animal, status, error = symbols("request animal status error")
    syncs.append(Sync(
        name="AnimalIdentity.updateStatus.Error",
        when=[_request(path, {"animal": animal, "status": status}, request),
              WhenPattern("AnimalIdentity", "updateStatus", {"animal": animal, "status": status}, {"error": error})],
        then=[_respond({"request": request, "error": error})],
    ))
    syncs.append(_missing_token("AnimalIdentity.updateStatus", path))
    return syncs

def make_syncs(eng: Engine) -> List[Sync]:
    syncs: List[Sync] = []
    syncs += auth_syncs()
    # HerdGrouping
    syncs += authenticated_action(eng, "HerdGrouping", "createHerd", ["name"], success=["herdName"])
    syncs += authenticated_action(eng, "HerdGrouping", "addAnimal", ["herdName", "animal"],
                                  message="Animal added to herd.")
    syncs += authenticated_action(eng, "HerdGrouping", "removeAnimal", ["herdName", "animal"],
                                  message="Animal removed from herd.")
    syncs += authenticated_action(eng, "HerdGrouping", "moveAnimal", ["sourceHerdName", "targetHerdName", "animal"],
                                  message="Animal moved.")
    syncs += authenticated_action(eng, "HerdGrouping", "mergeHerds", ["herdNameToKeep", "herdNameToArchive"],
                                  message="Herds merged.")
    syncs += authenticated_action(eng, "HerdGrouping", "splitHerd", ["sourceHerdName", "targetHerdName", "animalsToMove"],
                                  message="Herd split.")
    syncs += authenticated_action(eng, "HerdGrouping", "deleteHerd", ["herdName"], message="Herd deleted.")
    syncs += authenticated_action(eng, "HerdGrouping", "restoreHerd", ["herdName"], message="Herd restored.")
    syncs += authenticated_query(eng, "HerdGrouping", "_listActiveHerds", [], ["herds"])
    syncs += authenticated_query(eng, "HerdGrouping", "_listArchivedHerds", [], ["herds"])
    syncs += authenticated_query(eng, "HerdGrouping", "_viewComposition", ["herdName"], ["animals"])
    # AnimalIdentity
    syncs += authenticated_action(eng, "AnimalIdentity", "registerAnimal", ["id", "species", "sex"], success=["animal"],
                                  optional=["birthDate", "breed", "notes"])
    syncs += authenticated_action(eng, "AnimalIdentity", "markAsDeceased", ["animal", "date"],
                                  message="Animal marked as deceased.", optional=["cause"])
    syncs += authenticated_action(eng, "AnimalIdentity", "editDetails", ["animal", "species", "sex"],
                                  message="Animal details updated.", optional=["breed", "birthDate"])
    syncs += authenticated_action(eng, "AnimalIdentity", "markAsTransferred", ["animal", "date"],
                                  message="Animal marked as transferred.", optional=["recipientNotes"])
    syncs += authenticated_action(eng, "AnimalIdentity", "markAsSold", ["animal", "date"],
                                  message="Animal marked as sold.", optional=["buyerNotes"])
    syncs += authenticated_action(eng, "AnimalIdentity", "removeAnimal", ["animal"], message="Animal removed.")
    syncs += authenticated_query(eng, "AnimalIdentity", "_getAnimal", ["id"], ["animal"])
    syncs += authenticated_query(eng, "AnimalIdentity", "_getAllAnimals", [], ["animals"])
    syncs += animal_status_syncs()
    return syncs
