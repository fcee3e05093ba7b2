from typing import Any, AsyncIterator, Callable, Dict, List, Optional
from collections import Counter
from contextlib import asynccontextmanager
from datetime import timedelta
from pathlib import Path
import asyncio
import hashlib
import os
import re

import structlog
from pydantic import BaseModel, Field, ValidationError

from context_engine.domain.models.context_package import (
    ActionRecord,
    MemoryEntry,
    Outcome,
    UserProfile,
    utcnow,
)
from context_engine.infrastructure.config.settings import MemoryConfig
from context_engine.infrastructure.observability.events import EventRecorder
from .preference_learner import KeywordPreferenceStrategy, PreferenceStrategy

logger = structlog.get_logger(__name__)

FAILURE_MARKERS = ("error", "failed", "failure")


def derive_outcome(output: str, actions: List[ActionRecord]) -> Outcome:
    """Outcome tag of an interaction from its actions, falling back to the output text"""

    if actions:
        succeeded = sum(1 for action in actions if action.success)
        if succeeded == len(actions):
            return Outcome.SUCCESS
        if succeeded == 0:
            return Outcome.FAILURE
        return Outcome.PARTIAL

    lowered = output.lower()
    if any(marker in lowered for marker in FAILURE_MARKERS):
        return Outcome.FAILURE
    return Outcome.UNKNOWN


def _file_stem(key: str) -> str:
    safe = re.sub(r"[^A-Za-z0-9_.-]", "_", key)[:64]
    digest = hashlib.sha1(key.encode("utf-8")).hexdigest()[:8]
    return f"{safe}-{digest}"


def _merge_dicts(base: Dict[str, Any], updates: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge_dicts(merged[key], value)
        else:
            merged[key] = value
    return merged


class KeyedLocks:
    """asyncio locks created per key on demand and dropped once nobody holds or awaits them"""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Counter = Counter()

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __contains__(self, key: str) -> bool:
        return key in self._locks

    def __len__(self) -> int:
        return len(self._locks)


class SessionDocument(BaseModel):
    """On-disk shape of one session's short-term memory"""
    session_id: str
    entries: List[MemoryEntry] = Field(default_factory=list)
    actions: List[ActionRecord] = Field(default_factory=list)


class MemoryStore:
    """Session-scoped interaction history and user-scoped preference profiles.

    Short-term state is kept per session and appended under a per-session lock;
    profile updates are read-modify-write sequences serialized per user. Both
    are persisted as JSON documents when a storage directory is configured.
    Persistence problems are logged and never raised: memory is an
    optimization, the caller always gets a usable (possibly empty) answer.
    """

    def __init__(
        self,
        config: Optional[MemoryConfig] = None,
        storage_dir: Optional[Path] = None,
        strategy: Optional[PreferenceStrategy] = None,
        events: Optional[EventRecorder] = None,
    ):
        self.config = config or MemoryConfig()
        self.storage_dir = storage_dir if self.config.persist else None
        self.strategy = strategy or KeywordPreferenceStrategy()
        self.events = events or EventRecorder()

        self.sessions: Dict[str, List[MemoryEntry]] = {}
        self.actions: Dict[str, List[ActionRecord]] = {}
        self.profiles: Dict[str, UserProfile] = {}
        self._session_locks = KeyedLocks()
        self._user_locks = KeyedLocks()

    # ------------------------------------------------------------------
    # Short-term memory
    # ------------------------------------------------------------------

    async def get_short_term(self, session_id: str, limit: Optional[int] = None) -> List[MemoryEntry]:
        """Most recent entries for a session, newest first"""

        async with self._session_locks.hold(session_id):
            await self._ensure_session(session_id)
            entries = list(self.sessions.get(session_id, []))

        limit = min(limit or self.config.max_session_history, self.config.max_session_history)
        newest_first = sorted(entries, key=lambda e: e.timestamp, reverse=True)
        return [entry.model_copy(deep=True) for entry in newest_first[:limit]]

    async def get_recent_actions(self, session_id: str, limit: Optional[int] = None) -> List[ActionRecord]:
        """Most recent action records for a session, newest first"""

        async with self._session_locks.hold(session_id):
            await self._ensure_session(session_id)
            actions = list(self.actions.get(session_id, []))

        limit = limit or self.config.max_recent_actions
        newest_first = sorted(actions, key=lambda a: a.timestamp, reverse=True)
        return [action.model_copy(deep=True) for action in newest_first[:limit]]

    async def record_interaction(self, session_id: str, entry: MemoryEntry, user_id: str = "default") -> MemoryEntry:
        """Append an interaction to the session log and learn from it"""

        update: Dict[str, Any] = {"session_id": session_id}
        if entry.outcome == Outcome.UNKNOWN:
            update["outcome"] = derive_outcome(entry.output, entry.actions)
        # Re-validated so fields assigned after construction are normalized too
        entry = MemoryEntry.model_validate({**entry.model_dump(), **update})
        limit = self.config.max_short_term_items

        async with self._session_locks.hold(session_id):
            await self._ensure_session(session_id)
            entries = self.sessions.get(session_id, [])
            recent = sorted(entries, key=lambda e: e.timestamp, reverse=True)

            # Oldest dropped first
            self.sessions[session_id] = sorted([*entries, entry], key=lambda e: e.timestamp)[-limit:]
            self.actions[session_id] = [*self.actions.get(session_id, []), *entry.actions][-limit:]

            await self._persist_session(session_id)

        try:
            await self._update_profile(
                user_id, lambda profile: self.strategy.learn_from_interaction(profile, entry, recent)
            )
        except Exception as e:
            logger.warning("Preference inference failed", user_id=user_id, error=str(e))

        self.events.emit(
            "memory.interaction_recorded",
            session_id=session_id,
            user_id=user_id,
            outcome=entry.outcome.value,
            retained=len(self.sessions.get(session_id, [])),
        )
        return entry

    async def record_action(self, session_id: str, action: ActionRecord, user_id: str = "default") -> None:
        """Append a single action to the session's action log"""

        action = ActionRecord.model_validate(action.model_dump())

        async with self._session_locks.hold(session_id):
            await self._ensure_session(session_id)
            actions = [*self.actions.get(session_id, []), action]
            self.actions[session_id] = actions[-self.config.max_short_term_items:]
            await self._persist_session(session_id)

        try:
            await self._update_profile(user_id, lambda profile: self.strategy.learn_from_action(profile, action))
        except Exception as e:
            logger.warning("Preference inference failed", user_id=user_id, error=str(e))

        self.events.emit("memory.action_recorded", session_id=session_id, action=action.action, success=action.success)

    async def cleanup(self, older_than_days: Optional[int] = None) -> int:
        """Remove short-term entries and actions older than the cutoff. Returns the number removed."""

        days = self.config.retention_days if older_than_days is None else older_than_days
        cutoff = utcnow() - timedelta(days=days)
        removed = 0

        await self._discover_sessions()

        for session_id in list(self.sessions):
            async with self._session_locks.hold(session_id):
                entries = self.sessions.get(session_id, [])
                actions = self.actions.get(session_id, [])
                kept_entries = [e for e in entries if e.timestamp > cutoff]
                kept_actions = [a for a in actions if a.timestamp > cutoff]
                dropped = (len(entries) - len(kept_entries)) + (len(actions) - len(kept_actions))
                if not kept_entries and not kept_actions:
                    # Emptied sessions leave neither state nor a document behind
                    self.sessions.pop(session_id, None)
                    self.actions.pop(session_id, None)
                    await self._remove_document(self._session_path(session_id))
                elif dropped:
                    self.sessions[session_id] = kept_entries
                    self.actions[session_id] = kept_actions
                    await self._persist_session(session_id)
                removed += dropped

        logger.info("Cleaned up short-term memory", older_than_days=days, removed=removed)
        self.events.emit("memory.cleanup", older_than_days=days, removed=removed)
        return removed

    # ------------------------------------------------------------------
    # Long-term memory
    # ------------------------------------------------------------------

    async def get_long_term(self, user_id: str = "default") -> UserProfile:
        """User profile; a default profile when none has been recorded yet"""

        async with self._user_locks.hold(user_id):
            profile = await self._load_profile(user_id)
        return profile.model_copy(deep=True)

    async def update_user_preferences(self, user_id: str, updates: Dict[str, Any]) -> UserProfile:
        """Merge a partial nested dict of preferences into the profile"""

        def merge(profile: UserProfile) -> UserProfile:
            merged = _merge_dicts(profile.model_dump(mode="json"), updates)
            merged["user_id"] = user_id
            return UserProfile.model_validate(merged)

        return await self._update_profile(user_id, merge)

    async def export_memory_data(self, user_id: str = "default") -> Dict[str, Any]:
        """Summary of stored memory for inspection"""

        await self._discover_sessions()
        entries = sorted(
            (entry for session in self.sessions.values() for entry in session),
            key=lambda e: e.timestamp,
        )
        profile = await self.get_long_term(user_id)

        return {
            "short_term": {
                "session_count": len(self.sessions),
                "conversation_count": len(entries),
                "action_count": sum(len(actions) for actions in self.actions.values()),
                "recent_activity": [
                    {
                        "timestamp": entry.timestamp.isoformat(),
                        "input_length": len(entry.user_input),
                        "outcome": entry.outcome.value,
                    }
                    for entry in entries[-5:]
                ],
            },
            "long_term": {
                "user_profile": profile.model_dump(mode="json"),
            },
        }

    async def flush(self) -> None:
        """Persist every loaded session and profile"""

        for session_id in list(self.sessions):
            async with self._session_locks.hold(session_id):
                await self._persist_session(session_id)
        for user_id, profile in list(self.profiles.items()):
            async with self._user_locks.hold(user_id):
                await self._persist_profile(user_id, profile)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _update_profile(self, user_id: str, mutate: Callable[[UserProfile], UserProfile]) -> UserProfile:
        async with self._user_locks.hold(user_id):
            profile = await self._load_profile(user_id)
            updated = mutate(profile).model_copy(update={"user_id": user_id, "updated_at": utcnow()})
            self.profiles[user_id] = updated
            await self._persist_profile(user_id, updated)
            return updated.model_copy(deep=True)

    async def _ensure_session(self, session_id: str) -> None:
        if session_id in self.sessions:
            return

        document = None
        path = self._session_path(session_id)
        if path is not None:
            document = await self._read_document(path, SessionDocument)

        self.sessions[session_id] = document.entries if document else []
        self.actions[session_id] = document.actions if document else []

    async def _discover_sessions(self) -> None:
        """Load sessions that exist on disk but not in memory"""

        if self.storage_dir is None:
            return

        directory = self.storage_dir / "short-term"
        try:
            paths = await asyncio.to_thread(lambda: sorted(directory.glob("*.json")) if directory.is_dir() else [])
        except OSError as e:
            logger.warning("Could not list memory sessions", path=str(directory), error=str(e))
            return

        for path in paths:
            document = await self._read_document(path, SessionDocument)
            if document is None or document.session_id in self.sessions:
                continue
            async with self._session_locks.hold(document.session_id):
                if document.session_id not in self.sessions:
                    self.sessions[document.session_id] = document.entries
                    self.actions[document.session_id] = document.actions

    async def _load_profile(self, user_id: str) -> UserProfile:
        profile = self.profiles.get(user_id)
        if profile is not None:
            return profile

        path = self._profile_path(user_id)
        if path is not None:
            profile = await self._read_document(path, UserProfile)

        profile = profile or UserProfile(user_id=user_id)
        self.profiles[user_id] = profile
        return profile

    async def _persist_session(self, session_id: str) -> None:
        path = self._session_path(session_id)
        if path is None:
            return
        document = SessionDocument(
            session_id=session_id,
            entries=self.sessions.get(session_id, []),
            actions=self.actions.get(session_id, []),
        )
        await self._write_document(path, document.model_dump_json(indent=2))

    async def _persist_profile(self, user_id: str, profile: UserProfile) -> None:
        path = self._profile_path(user_id)
        if path is None:
            return
        await self._write_document(path, profile.model_dump_json(indent=2))

    async def _read_document(self, path: Path, model: type) -> Optional[Any]:
        try:
            raw = await asyncio.to_thread(lambda: path.read_text(encoding="utf-8") if path.is_file() else None)
            if raw is None:
                return None
            return model.model_validate_json(raw)
        except (OSError, UnicodeDecodeError, ValidationError) as e:
            logger.warning("Memory data unreadable, using defaults", path=str(path), error=str(e))
            self.events.emit("memory.load_failed", path=str(path), error=str(e))
            return None

    async def _write_document(self, path: Path, payload: str) -> None:
        try:
            await asyncio.to_thread(self._atomic_write, path, payload)
        except OSError as e:
            logger.warning("Failed to persist memory", path=str(path), error=str(e))
            self.events.emit("memory.persist_failed", path=str(path), error=str(e))

    async def _remove_document(self, path: Optional[Path]) -> None:
        if path is None:
            return
        try:
            await asyncio.to_thread(path.unlink, missing_ok=True)
        except OSError as e:
            logger.warning("Failed to remove memory document", path=str(path), error=str(e))
            self.events.emit("memory.persist_failed", path=str(path), error=str(e))

    @staticmethod
    def _atomic_write(path: Path, payload: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        tmp_path.write_text(payload, encoding="utf-8")
        os.replace(tmp_path, path)

    def _session_path(self, session_id: str) -> Optional[Path]:
        if self.storage_dir is None:
            return None
        return self.storage_dir / "short-term" / f"{_file_stem(session_id)}.json"

    def _profile_path(self, user_id: str) -> Optional[Path]:
        if self.storage_dir is None:
            return None
        return self.storage_dir / "long-term" / f"{_file_stem(user_id)}.json"
