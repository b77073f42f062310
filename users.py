"""
User directory: identity lookups by id or email behind a TTL cache.

Lookups are cached for ``ttl`` seconds, including "not found" results, keyed
by ``uid:<uid>`` or ``email:<normalized email>``. Profile edits elsewhere
are not seen until the entry expires; ``sign_out`` drops everything.
"""
import logging
from typing import Dict, List, Optional

from cache import TimedCache
from database import USERS, DocumentStore, Where
from schemas import Identity, Preferences, User

logger = logging.getLogger(__name__)

MIN_SEARCH_TERM = 2
# high code point used to turn a prefix into a range upper bound
PREFIX_END = "\uf8ff"


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def _email_key(email: str) -> str:
    return f"email:{email}"


def _uid_key(uid: str) -> str:
    return f"uid:{uid}"


class UserDirectory:
    def __init__(self, store: DocumentStore, cache: Optional[TimedCache[str, User]] = None):
        self._store = store
        self._cache: TimedCache[str, User] = cache if cache is not None else TimedCache()

    async def find_by_email(self, email: str) -> Optional[User]:
        key = normalize_email(email)
        if not key:
            return None
        cached = self._cache.get(_email_key(key))
        if cached is not None:
            logger.debug("User cache hit for %s", key)
            return cached.value

        records = await self._store.query(USERS, [Where("email", "==", key)], limit=1)
        user = User.from_record(records[0]) if records else None
        self._cache.put(_email_key(key), user)
        return user

    async def find_by_id(self, uid: str) -> Optional[User]:
        if not uid:
            return None
        cached = self._cache.get(_uid_key(uid))
        if cached is not None:
            return cached.value

        record = await self._store.get(USERS, uid)
        user = User.from_record(record) if record else None
        self._cache.put(_uid_key(uid), user)
        return user

    async def ensure(self, identity: Identity) -> User:
        """Return the stored profile for ``identity``, creating it on first sign-in."""
        record = await self._store.get(USERS, identity.uid)
        if record:
            return User.from_record(record)

        doc = {
            "displayName": identity.display_name or "User",
            "email": normalize_email(identity.email or ""),
            "preferences": Preferences().model_dump(by_alias=True),
        }
        if identity.photo_url:
            doc["avatarUrl"] = identity.photo_url
        await self._store.insert(USERS, doc, id=identity.uid)
        logger.info("Created user profile for %s", identity.uid)

        record = await self._store.get(USERS, identity.uid)
        user = User.from_record(record or {"id": identity.uid, **doc})
        # a cached "not found" for this user is now wrong
        self._cache.invalidate(_uid_key(identity.uid))
        if user.email:
            self._cache.invalidate(_email_key(user.email))
        return user

    async def search(self, term: str, limit: int = 10) -> List[User]:
        term = (term or "").strip()
        if len(term) < MIN_SEARCH_TERM or limit <= 0:
            return []

        email_prefix = term.lower()
        by_email = await self._store.query(
            USERS,
            [Where("email", ">=", email_prefix), Where("email", "<", email_prefix + PREFIX_END)],
            limit=limit,
        )
        by_name = await self._store.query(
            USERS,
            [Where("displayName", ">=", term), Where("displayName", "<", term + PREFIX_END)],
            limit=limit,
        )

        found: Dict[str, User] = {}
        for record in by_email + by_name:
            if record["id"] not in found:
                found[record["id"]] = User.from_record(record)
            if len(found) >= limit:
                break
        return list(found.values())

    def sign_out(self) -> None:
        self._cache.invalidate_all()
        logger.info("User cache cleared")

    def cache_stats(self) -> Dict[str, int]:
        return self._cache.stats()
