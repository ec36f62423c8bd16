"""
Core data models for the store agent pipeline.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

MESSAGE_ROLES = ('user', 'assistant')


@dataclass
class Conversation:
    """A chat thread owned by exactly one user.

    Messages are stored separately; ``messages`` is only filled when a
    conversation is read together with its history, oldest first.
    """
    id: str
    user_id: str
    title: str
    created_at: datetime
    updated_at: datetime
    messages: List['Message'] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'id': self.id,
            'user_id': self.user_id,
            'title': self.title,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat()
        }
        if self.messages:
            data['messages'] = [message.to_dict() for message in self.messages]
        return data


@dataclass(frozen=True)
class Message:
    """A single immutable message appended to a conversation."""
    id: str
    conversation_id: str
    role: str  # 'user' | 'assistant'
    content: str
    metadata: Dict[str, Any]
    created_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'conversation_id': self.conversation_id,
            'role': self.role,
            'content': self.content,
            'metadata': self.metadata,
            'created_at': self.created_at.isoformat()
        }


@dataclass
class Document:
    """Text rendering of one domain record, the unit of synchronization.

    The id is stable across sync passes (``{entity_type}_{entity_id}``) so a
    re-sync replaces the previous version in the index.
    """
    id: str
    content: str
    metadata: Dict[str, Any]

    @property
    def entity_type(self) -> str:
        return self.metadata.get('entity_type', 'unknown')


@dataclass
class SearchFilters:
    """Optional restrictions applied to a similarity search."""
    entity_types: Optional[List[str]] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    limit: Optional[int] = None


@dataclass
class SearchResult:
    """A retrieved index entry with its scores."""
    id: str
    content: str
    metadata: Dict[str, Any]
    similarity: float
    entity_type: str
    relevance_score: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ChatResult:
    """Generated answer plus the metadata describing how it was produced."""
    response: str
    session_id: str
    metadata: Dict[str, Any]


@dataclass
class SyncResult:
    """Outcome of syncing one entity type."""
    entity_type: str
    documents_upserted: int = 0
    errors: List[str] = field(default_factory=list)
    skipped: bool = False
    duration_ms: float = 0.0


@dataclass
class SyncReport:
    """Outcome of a full pass over every entity type."""
    results: Dict[str, SyncResult]
    failed: Dict[str, str]
    duration_ms: float

    @property
    def total_synced(self) -> int:
        return sum(result.documents_upserted for result in self.results.values())

    @property
    def total_skipped(self) -> int:
        return sum(1 for result in self.results.values() if result.skipped)


@dataclass
class SyncStatus:
    """Last known synchronization state of one entity type."""
    entity_type: str
    last_sync: Optional[datetime] = None
    checksum: str = ''
    document_count: int = 0
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'entity_type': self.entity_type,
            'last_sync': self.last_sync.isoformat() if self.last_sync else None,
            'checksum': self.checksum,
            'document_count': self.document_count,
            'last_error': self.last_error
        }


@dataclass
class PerformanceMetrics:
    """Process-wide counters, reset on restart.

    Mutated from the query path and the scheduled sync; the event loop is
    single threaded so each update must complete without awaiting.
    """
    query_count: int = 0
    average_response_time: float = 0.0
    cache_hits: int = 0
    cache_misses: int = 0
    sync_durations: Dict[str, List[float]] = field(default_factory=dict)
    last_sync: Optional[Dict[str, Any]] = None

    max_sync_history: int = 10

    def record_query(self, response_time_ms: float) -> None:
        self.query_count += 1
        self.average_response_time += (response_time_ms - self.average_response_time) / self.query_count

    def record_sync_duration(self, entity_type: str, duration_ms: float) -> None:
        durations = self.sync_durations.setdefault(entity_type, [])
        durations.append(duration_ms)
        del durations[:-self.max_sync_history]

    def record_sync_report(self, report: SyncReport, trigger: str, finished_at: datetime) -> None:
        for entity_type, result in report.results.items():
            if not result.skipped:
                self.record_sync_duration(entity_type, result.duration_ms)
        self.last_sync = {
            'trigger': trigger,
            'finished_at': finished_at.isoformat(),
            'duration_ms': report.duration_ms,
            'total_synced': report.total_synced,
            'total_skipped': report.total_skipped,
            'failed': sorted(report.failed)
        }

    def snapshot(self) -> Dict[str, Any]:
        average_sync = {
            entity_type: round(sum(durations) / len(durations), 2)
            for entity_type, durations in self.sync_durations.items() if durations
        }
        return {
            'query_count': self.query_count,
            'average_response_time': round(self.average_response_time, 2),
            'cache_hits': self.cache_hits,
            'cache_misses': self.cache_misses,
            'sync_durations': {key: list(value) for key, value in self.sync_durations.items()},
            'average_sync_durations': average_sync,
            'last_sync': dict(self.last_sync) if self.last_sync else None
        }
