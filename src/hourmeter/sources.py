import json
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import structlog

from hourmeter.clock import floor_to_utc_hour, from_epoch_ms
from hourmeter.errors import TranscriptReadError
from hourmeter.models import HourBounds, TranscriptRef
from hourmeter.transcript import discover_transcript_timestamp_bounds

logger = structlog.get_logger()

SESSION_STORE_FILENAME = "sessions.json"
TRANSCRIPT_SUFFIX = ".jsonl"


class TranscriptSource(Protocol):
    """
    TranscriptSource enumerates the session transcripts an export
    reads. Implementations decide where transcripts live and which
    session key each one is reported under.
    """

    def list_transcripts(
        self,
        modified_since_ms: "int | None" = None,
    ) -> "Sequence[TranscriptRef]": ...

    def discover_hour_bounds(self) -> "HourBounds | None": ...


@dataclass(frozen=True, slots=True)
class _SessionEntry:
    key: "str"
    provider: "str | None" = None
    model: "str | None" = None


def derive_session_id_from_file(file_name: "str") -> "str":
    """
    strips the .jsonl suffix and any -topic-<id> suffix from a
    transcript file name.
    """
    stem = file_name
    if stem.lower().endswith(TRANSCRIPT_SUFFIX):
        stem = stem[: -len(TRANSCRIPT_SUFFIX)]
    topic_at = stem.find("-topic-")
    return stem if topic_at == -1 else stem[:topic_at]


def _clean(value: "object") -> "str | None":
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def load_session_store(
    sessions_dir: "Path",
) -> "tuple[dict[str, _SessionEntry], dict[str, _SessionEntry]]":
    """
    reads the agent's session store and indexes it by session id and
    by transcript file name. A missing or unreadable store yields
    empty indexes.
    """
    by_session_id: "dict[str, _SessionEntry]" = {}
    by_file_name: "dict[str, _SessionEntry]" = {}

    store_path = sessions_dir / SESSION_STORE_FILENAME
    try:
        store = json.loads(store_path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return by_session_id, by_file_name
    except (OSError, ValueError):
        logger.warning("session_store_unreadable", path=str(store_path))
        return by_session_id, by_file_name

    if not isinstance(store, Mapping):
        return by_session_id, by_file_name

    for key, raw in store.items():
        if not isinstance(raw, Mapping):
            continue
        entry = _SessionEntry(
            key=key,
            provider=_clean(raw.get("modelProvider"))
            or _clean(raw.get("providerOverride")),
            model=_clean(raw.get("model")) or _clean(raw.get("modelOverride")),
        )
        session_id = _clean(raw.get("sessionId"))
        if session_id:
            by_session_id[session_id] = entry
        session_file = _clean(raw.get("sessionFile"))
        if session_file:
            by_file_name[Path(session_file).name] = entry

    return by_session_id, by_file_name


class SessionsDirectorySource:
    """
    SessionsDirectorySource finds transcripts under
    <state_dir>/agents/<agent_id>/sessions/*.jsonl.

    Session keys come from the agent's sessions.json store when the
    transcript is listed there, and fall back to
    agent:<agent_id>:<session_id> otherwise.
    """

    def __init__(self, state_dir: "Path") -> "None":
        self._agents_dir = Path(state_dir) / "agents"

    def _sessions_dirs(self) -> "list[tuple[str, Path]]":
        if not self._agents_dir.is_dir():
            return []
        return [
            (agent_dir.name, agent_dir / "sessions")
            for agent_dir in sorted(self._agents_dir.iterdir())
            if (agent_dir / "sessions").is_dir()
        ]

    @staticmethod
    def _transcript_files(sessions_dir: "Path") -> "list[Path]":
        return sorted(
            path
            for path in sessions_dir.iterdir()
            if path.is_file() and path.name.endswith(TRANSCRIPT_SUFFIX)
        )

    def list_transcripts(
        self,
        modified_since_ms: "int | None" = None,
    ) -> "list[TranscriptRef]":
        """
        lists transcripts in a stable order. Files last written before
        modified_since_ms cannot hold turns from later hours and are
        skipped.
        """
        refs: "list[TranscriptRef]" = []

        for agent_id, sessions_dir in self._sessions_dirs():
            by_session_id, by_file_name = load_session_store(sessions_dir)

            for path in self._transcript_files(sessions_dir):
                if modified_since_ms is not None:
                    try:
                        mtime_ms = path.stat().st_mtime_ns // 1_000_000
                    except OSError:
                        continue
                    if mtime_ms < modified_since_ms:
                        continue

                session_id = derive_session_id_from_file(path.name)
                mapped = by_file_name.get(path.name) or by_session_id.get(session_id)
                if mapped is None:
                    refs.append(
                        TranscriptRef(
                            path=path,
                            session_key=f"agent:{agent_id}:{session_id}",
                        )
                    )
                    continue

                refs.append(
                    TranscriptRef(
                        path=path,
                        session_key=mapped.key,
                        default_provider=mapped.provider,
                        default_model=mapped.model,
                    )
                )

        return refs

    def discover_hour_bounds(self) -> "HourBounds | None":
        """
        finds the earliest and latest transcript hours on disk. A
        transcript without timestamped lines counts at its mtime.
        """
        earliest: "int | None" = None
        latest: "int | None" = None

        for ref in self.list_transcripts():
            try:
                bounds = discover_transcript_timestamp_bounds(ref.path)
            except TranscriptReadError as exc:
                logger.warning(
                    "transcript_bounds_failed", path=str(ref.path), error=str(exc)
                )
                continue

            if bounds is None:
                try:
                    mtime_ms = ref.path.stat().st_mtime_ns // 1_000_000
                except OSError:
                    continue
                bounds = (mtime_ms, mtime_ms)

            earliest = bounds[0] if earliest is None else min(earliest, bounds[0])
            latest = bounds[1] if latest is None else max(latest, bounds[1])

        if earliest is None or latest is None:
            return None

        return HourBounds(
            earliest_hour=floor_to_utc_hour(from_epoch_ms(earliest)),
            latest_hour=floor_to_utc_hour(from_epoch_ms(latest)),
        )
