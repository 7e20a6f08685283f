from __future__ import annotations
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional
from uuid import uuid4
import asyncio, copy, hashlib, logging, secrets, threading

from engine import Concept

logger = logging.getLogger(__name__)

# ====== Storage ======

class Store:
    """In-memory document collection; readers always get copies."""
    def __init__(self):
        self._docs: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.RLock()
    def find_one(self, **where: Any) -> Optional[Dict[str, Any]]:
        found = self.find(**where)
        return found[0] if found else None
    def find(self, **where: Any) -> List[Dict[str, Any]]:
        with self._lock:
            return [copy.deepcopy(d) for d in self._docs.values()
                    if all(d.get(k) == v for k, v in where.items())]
    def insert(self, doc: Dict[str, Any]) -> str:
        doc_id = str(uuid4())
        with self._lock:
            self._docs[doc_id] = {**copy.deepcopy(doc), "_id": doc_id}
        return doc_id
    def update(self, doc_id: str, **changes: Any) -> bool:
        with self._lock:
            doc = self._docs.get(doc_id)
            if doc is None:
                return False
            doc.update(copy.deepcopy(changes))
            return True
    def delete(self, doc_id: str) -> bool:
        with self._lock:
            return self._docs.pop(doc_id, None) is not None
    @contextmanager
    def transaction(self) -> Iterator["Store"]:
        """All-or-nothing scope: any exception restores the snapshot, the lock is always released."""
        with self._lock:
            snapshot = copy.deepcopy(self._docs)
            try:
                yield self
            except BaseException:
                self._docs = snapshot
                raise

# ====== Concepts ======

# 1) Requesting: the transport boundary
class Requesting(Concept):
    def __init__(self, name: str = "Requesting", max_requests: int = 1024):
        super().__init__(name)
        self.max_requests = max_requests
        self._requests: Dict[str, Dict[str, Any]] = {}
        self._responses: Dict[str, Dict[str, Any]] = {}
        self._waiters: Dict[str, List[asyncio.Future]] = {}
        self._lock = threading.Lock()
    def request(self, /, **fields: Any) -> Dict[str, Any]:
        rid = str(uuid4())
        with self._lock:
            self._requests[rid] = fields
            excess = len(self._requests) - self.max_requests
            if excess > 0:
                # answered requests are forgotten first, oldest first
                answered = [r for r in self._requests if r in self._responses and not self._waiters.get(r)]
                pending = [r for r in self._requests if r not in self._responses or self._waiters.get(r)]
                for old in (answered + pending)[:excess]:
                    del self._requests[old]
                    self._responses.pop(old, None)
                    self._waiters.pop(old, None)
        return {"request": rid}
    def respond(self, /, request: str, **body: Any) -> Dict[str, Any]:
        with self._lock:
            if request not in self._requests:
                return {"error": f"Unknown request '{request}'."}
            if request in self._responses:
                logger.warning("request %s already responded; keeping the first response", request,
                               extra={"request": request})
                return {"error": f"Request '{request}' has already been responded to."}
            self._responses[request] = body
            waiters = self._waiters.pop(request, [])
        for fut in waiters:
            fut.get_loop().call_soon_threadsafe(_resolve, fut, body)
        return {"request": request}
    def _getRequest(self, request: str) -> Dict[str, Any]:
        fields = self._requests.get(request)
        return {"fields": dict(fields)} if fields is not None else {"error": f"Unknown request '{request}'."}
    def _getResponse(self, request: str) -> Dict[str, Any]:
        if request in self._responses:
            return {"body": self._responses[request]}
        return {"error": f"No response for request '{request}'."}
    async def _awaitResponse(self, request: str, timeout: float = 10.0) -> Dict[str, Any]:
        with self._lock:
            if request in self._responses:
                return {"body": self._responses[request]}
            fut = asyncio.get_running_loop().create_future()
            self._waiters.setdefault(request, []).append(fut)
        try:
            return {"body": await asyncio.wait_for(fut, timeout)}
        except asyncio.TimeoutError:
            with self._lock:
                if fut in self._waiters.get(request, []):
                    self._waiters[request].remove(fut)
            return {"error": f"Request '{request}' timed out after {timeout:g}s without a response."}

def _resolve(fut: asyncio.Future, body: Dict[str, Any]) -> None:
    if not fut.done():
        fut.set_result(body)

# 2) UserAuthentication: usernames double as user ids
class UserAuthentication(Concept):
    def __init__(self, name: str = "UserAuthentication"):
        super().__init__(name)
        self.users = Store()
        self._sessions: Dict[str, str] = {}
    @staticmethod
    def _hash(password: str, salt: str) -> str:
        return hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), 100_000).hex()
    async def register(self, username: str, password: str) -> Dict[str, Any]:
        if not username or not username.strip():
            return {"error": "Username cannot be empty."}
        if not password:
            return {"error": "Password cannot be empty."}
        if self.users.find_one(username=username):
            return {"error": f"Username '{username}' is already taken."}
        salt = secrets.token_hex(8)
        self.users.insert({"username": username, "salt": salt, "hash": self._hash(password, salt)})
        return {"user": username}
    async def login(self, username: str, password: str) -> Dict[str, Any]:
        user = self.users.find_one(username=username)
        if user is None or self._hash(password, user["salt"]) != user["hash"]:
            return {"error": "Invalid username or password."}
        token = secrets.token_urlsafe(24)
        self._sessions[token] = username
        return {"token": token}
    async def verify(self, token: str) -> Dict[str, Any]:
        user = self._sessions.get(token) if token else None
        if user is None:
            return {"error": "invalid token"}
        return {"user": user}
    async def logout(self, token: str) -> Dict[str, Any]:
        if self._sessions.pop(token, None) is None:
            return {"error": "invalid token"}
        return {}
    async def _getUsername(self, user: str) -> Dict[str, Any]:
        doc = self.users.find_one(username=user)
        return {"username": doc["username"]} if doc else {"error": f"User '{user}' not found."}

# 3) HerdGrouping
class HerdGrouping(Concept):
    """Named herds of animals, unique per user. Deleting archives first, then removes."""
    def __init__(self, name: str = "HerdGrouping"):
        super().__init__(name)
        self.groups = Store()
    def _herd(self, user: str, name: str) -> Optional[Dict[str, Any]]:
        return self.groups.find_one(userId=user, name=name)
    async def createHerd(self, user: str, name: str, description: str = "") -> Dict[str, Any]:
        if not name or not name.strip():
            return {"error": "Herd name cannot be empty."}
        with self.groups.transaction():
            if self._herd(user, name):
                return {"error": f"Herd '{name}' already exists for user '{user}'."}
            self.groups.insert({"userId": user, "name": name, "description": description,
                                "members": [], "isArchived": False})
        return {"herdName": name}
    def _active(self, user: str, name: str, role: str = "Herd") -> Any:
        herd = self._herd(user, name)
        if herd is None:
            return {"error": f"{role} '{name}' not found for user '{user}'."}
        if herd["isArchived"]:
            return {"error": f"{role} '{name}' is archived and cannot be modified."}
        return herd
    async def addAnimal(self, user: str, herdName: str, animal: str) -> Dict[str, Any]:
        herd = self._active(user, herdName)
        if "error" in herd:
            return herd
        if animal in herd["members"]:
            return {"error": f"Animal '{animal}' is already a member of herd '{herdName}'."}
        self.groups.update(herd["_id"], members=herd["members"] + [animal])
        return {}
    async def removeAnimal(self, user: str, herdName: str, animal: str) -> Dict[str, Any]:
        herd = self._active(user, herdName)
        if "error" in herd:
            return herd
        if animal not in herd["members"]:
            return {"error": f"Animal '{animal}' is not a member of herd '{herdName}'."}
        self.groups.update(herd["_id"], members=[a for a in herd["members"] if a != animal])
        return {}
    async def moveAnimal(self, user: str, sourceHerdName: str, targetHerdName: str, animal: str) -> Dict[str, Any]:
        if sourceHerdName == targetHerdName:
            return {"error": "Source and target herds cannot be the same for moving an animal."}
        source = self._active(user, sourceHerdName, "Source herd")
        if "error" in source:
            return source
        target = self._active(user, targetHerdName, "Target herd")
        if "error" in target:
            return target
        if animal not in source["members"]:
            return {"error": f"Animal '{animal}' is not a member of source herd '{sourceHerdName}'."}
        try:
            with self.groups.transaction():
                self.groups.update(source["_id"], members=[a for a in source["members"] if a != animal])
                self.groups.update(target["_id"], members=_union(target["members"], [animal]))
        except Exception:
            logger.exception("moveAnimal failed")
            return {"error": "Failed to move animal due to a storage error."}
        return {}
    async def mergeHerds(self, user: str, herdNameToKeep: str, herdNameToArchive: str) -> Dict[str, Any]:
        if herdNameToKeep == herdNameToArchive:
            return {"error": "Cannot merge a herd into itself."}
        try:
            with self.groups.transaction():
                keep = self._active(user, herdNameToKeep)
                if "error" in keep:
                    return keep
                gone = self._herd(user, herdNameToArchive)
                if gone is None:
                    return {"error": f"Herd '{herdNameToArchive}' not found for user '{user}'."}
                if gone["isArchived"]:
                    return {"error": f"Herd '{herdNameToArchive}' is already archived."}
                self.groups.update(keep["_id"], members=_union(keep["members"], gone["members"]))
                self.groups.update(gone["_id"], isArchived=True, members=[])
        except Exception:
            logger.exception("mergeHerds failed")
            return {"error": "Failed to merge herds due to a storage error."}
        return {}
    async def splitHerd(self, user: str, sourceHerdName: str, targetHerdName: str,
                        animalsToMove: List[str]) -> Dict[str, Any]:
        if sourceHerdName == targetHerdName:
            return {"error": "Source and target herds cannot be the same for splitting."}
        if not animalsToMove:
            return {"error": "No animals specified to move for splitting."}
        source = self._active(user, sourceHerdName, "Source herd")
        if "error" in source:
            return source
        missing = [a for a in animalsToMove if a not in source["members"]]
        if missing:
            return {"error": f"Animals {', '.join(missing)} are not members of the source herd '{sourceHerdName}'."}
        try:
            with self.groups.transaction():
                target = self._herd(user, targetHerdName)
                if target is None:
                    target_id = self.groups.insert({"userId": user, "name": targetHerdName, "description": "",
                                                    "members": [], "isArchived": False})
                    target = {"_id": target_id, "members": []}
                elif target["isArchived"]:
                    return {"error": f"Target herd '{targetHerdName}' is archived and cannot be split into."}
                self.groups.update(source["_id"], members=[a for a in source["members"] if a not in animalsToMove])
                self.groups.update(target["_id"], members=_union(target["members"], animalsToMove))
        except Exception:
            logger.exception("splitHerd failed")
            return {"error": "Failed to split herd due to a storage error."}
        return {}
    async def deleteHerd(self, user: str, herdName: str) -> Dict[str, Any]:
        herd = self._herd(user, herdName)
        if herd is None:
            return {"error": f"Herd '{herdName}' not found for user '{user}'."}
        if herd["isArchived"]:
            self.groups.delete(herd["_id"])
        else:
            self.groups.update(herd["_id"], isArchived=True, members=[])
        return {}
    async def restoreHerd(self, user: str, herdName: str) -> Dict[str, Any]:
        herd = self._herd(user, herdName)
        if herd is None:
            return {"error": f"Herd '{herdName}' not found for user '{user}'."}
        if not herd["isArchived"]:
            return {"error": f"Herd '{herdName}' is not archived and cannot be restored."}
        self.groups.update(herd["_id"], isArchived=False)
        return {}
    async def _viewComposition(self, user: str, herdName: str) -> Dict[str, Any]:
        herd = self._herd(user, herdName)
        if herd is None:
            return {"error": f"Herd '{herdName}' not found for user '{user}'."}
        return {"animals": herd["members"]}
    async def _listActiveHerds(self, user: str) -> Dict[str, Any]:
        return {"herds": [_summary(h) for h in self.groups.find(userId=user, isArchived=False)]}
    async def _listArchivedHerds(self, user: str) -> Dict[str, Any]:
        return {"herds": [_summary(h) for h in self.groups.find(userId=user, isArchived=True)]}

def _union(members: List[str], extra: List[str]) -> List[str]:
    return members + [a for a in extra if a not in members]

def _summary(herd: Dict[str, Any]) -> Dict[str, Any]:
    return {"name": herd["name"], "description": herd.get("description", ""), "isArchived": herd["isArchived"]}

# 4) AnimalIdentity
SEXES = ("male", "female", "neutered")
STATUSES = ("alive", "sold", "deceased", "transferred")

class AnimalIdentity(Concept):
    def __init__(self, name: str = "AnimalIdentity"):
        super().__init__(name)
        self.animals = Store()
    async def registerAnimal(self, user: str, id: str, species: str, sex: str, birthDate: Optional[str] = None,
                             breed: str = "", notes: str = "") -> Dict[str, Any]:
        if not id:
            return {"error": "Animal id cannot be empty."}
        if not species:
            return {"error": "Species cannot be empty."}
        if sex not in SEXES:
            return {"error": f"Invalid sex '{sex}'. Expected one of: {', '.join(SEXES)}."}
        with self.animals.transaction():
            if self.animals.find_one(ownerId=user, animalId=id):
                return {"error": f"Animal with ID '{id}' already exists for user '{user}'."}
            self.animals.insert({"ownerId": user, "animalId": id, "species": species, "breed": breed or "",
                                 "sex": sex, "status": "alive", "notes": notes or "", "birthDate": birthDate or None})
        return {"animal": id}
    def _owned(self, user: str, animal: str) -> Optional[Dict[str, Any]]:
        return self.animals.find_one(ownerId=user, animalId=animal)
    async def updateStatus(self, user: str, animal: str, status: str, notes: str = "") -> Dict[str, Any]:
        if status not in STATUSES:
            return {"error": f"Invalid status '{status}'. Expected one of: {', '.join(STATUSES)}."}
        doc = self._owned(user, animal)
        if doc is None:
            return {"error": f"Animal with ID '{animal}' not found for user '{user}'."}
        self.animals.update(doc["_id"], status=status, notes=notes or doc["notes"])
        return {}
    async def editDetails(self, user: str, animal: str, species: str, breed: str, birthDate: Optional[str],
                          sex: str) -> Dict[str, Any]:
        if not species:
            return {"error": "Species cannot be empty."}
        if sex not in SEXES:
            return {"error": f"Invalid sex '{sex}'. Expected one of: {', '.join(SEXES)}."}
        doc = self._owned(user, animal)
        if doc is None:
            return {"error": f"Animal with ID '{animal}' not found for user '{user}'."}
        self.animals.update(doc["_id"], species=species, breed=breed or "", birthDate=birthDate or None, sex=sex)
        return {}
    async def markAsTransferred(self, user: str, animal: str, date: str, recipientNotes: str = "") -> Dict[str, Any]:
        return _retire(self.animals, user, animal, "transferred",
                       f"Transferred on {date}. Recipient notes: {recipientNotes or 'None'}.")
    async def markAsDeceased(self, user: str, animal: str, date: str, cause: str = "") -> Dict[str, Any]:
        return _retire(self.animals, user, animal, "deceased", f"Deceased on {date}. Cause: {cause or 'unspecified'}.")
    async def markAsSold(self, user: str, animal: str, date: str, buyerNotes: str = "") -> Dict[str, Any]:
        return _retire(self.animals, user, animal, "sold", f"Sold on {date}. Buyer notes: {buyerNotes or 'None'}.")
    async def removeAnimal(self, user: str, animal: str) -> Dict[str, Any]:
        doc = self._owned(user, animal)
        if doc is None:
            return {"error": f"Animal with ID '{animal}' not found for user '{user}'."}
        self.animals.delete(doc["_id"])
        return {}
    async def _getAnimal(self, user: str, id: str) -> Dict[str, Any]:
        doc = self._owned(user, id)
        if doc is None:
            return {"error": f"Animal with ID '{id}' not found for user '{user}'."}
        return {"animal": _public(doc)}
    async def _getAllAnimals(self, user: str) -> Dict[str, Any]:
        return {"animals": [_public(d) for d in self.animals.find(ownerId=user)]}

def _retire(animals: Store, user: str, animal: str, status: str, note: str) -> Dict[str, Any]:
    """Move a living animal to a final status, recording why in its notes."""
    doc = animals.find_one(ownerId=user, animalId=animal)
    if doc is None:
        return {"error": f"Animal with ID '{animal}' not found for user '{user}'."}
    if doc["status"] != "alive":
        return {"error": f"Animal '{animal}' for user '{user}' must be 'alive' to be marked as {status} "
                         f"(current status: {doc['status']})."}
    animals.update(doc["_id"], status=status, notes=note)
    return {}

def _public(doc: Dict[str, Any]) -> Dict[str, Any]:
    return {"id": doc["animalId"], "species": doc["species"], "breed": doc["breed"], "sex": doc["sex"],
            "status": doc["status"], "notes": doc["notes"], "birthDate": doc["birthDate"]}
