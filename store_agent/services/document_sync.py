"""
Document synchronization: projects domain records into the embedding index.
"""

import asyncio
import hashlib
import importlib
import json
import time
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from ..models.core import Document, SyncReport, SyncResult, SyncStatus
from ..utils.config import AppConfig, config
from ..utils.errors import SyncError, UpstreamError, ValidationError
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import elapsed_ms, utc_now
from .embedding_index import EmbeddingIndex
from .renderers import ENTITY_TYPES, SYSTEM_FEATURES, render_record

logger = get_logger(__name__)

RecordSource = Callable[[], Awaitable[List[Dict[str, Any]]]]


async def system_features_source() -> List[Dict[str, Any]]:
    return [dict(feature) for feature in SYSTEM_FEATURES]


def load_sources(factory_path: str) -> Dict[str, RecordSource]:
    """Build record sources from a factory named as ``package.module:function``.

    The factory takes no arguments and returns a mapping of entity type to
    record source. An empty path yields no sources.

    Raises:
        ValueError: If the path is malformed, cannot be imported or the factory
            does not return a mapping
    """
    if not factory_path:
        return {}

    module_name, _, attribute = factory_path.partition(':')
    if not module_name or not attribute:
        raise ValueError(f'Sources factory must look like package.module:function, got {factory_path!r}')

    try:
        factory = getattr(importlib.import_module(module_name), attribute)
    except (ImportError, AttributeError) as e:
        raise ValueError(f'Cannot load sources factory {factory_path}: {e}') from e

    sources = factory()
    if not isinstance(sources, dict):
        raise ValueError(f'Sources factory {factory_path} returned {type(sources).__name__}, expected a dict')
    logger.info(f'Loaded record sources for {sorted(sources)} from {factory_path}')
    return sources


class DocumentSyncer:
    """Syncs each entity type's records into the embedding index.

    Args:
        index: Target embedding index
        sources: Entity type to an async callable returning all records of that type
        app_config: Configuration, uses the process default if None
    """

    def __init__(self, index: EmbeddingIndex, sources: Dict[str, RecordSource], app_config: Optional[AppConfig] = None):
        self.config = app_config or config
        self.index = index
        self.sources = dict(sources)
        self.sources.setdefault('system_features', system_features_source)

        unknown = [entity_type for entity_type in self.sources if entity_type not in ENTITY_TYPES]
        if unknown:
            raise ValueError(f'No renderer for entity types: {unknown}')

        self.entity_types = [entity_type for entity_type in ENTITY_TYPES if entity_type in self.sources]
        self.batch_size = self.config.sync.batch_size
        self._statuses: Dict[str, SyncStatus] = {}
        self._running = False
        # Syncs of one entity type run one at a time so delete_stale only sees its own run
        self._locks: Dict[str, asyncio.Lock] = {entity_type: asyncio.Lock() for entity_type in self.entity_types}

    @property
    def is_running(self) -> bool:
        return self._running

    @staticmethod
    def calculate_checksum(records: List[Dict[str, Any]]) -> str:
        """Order-independent fingerprint of a record list."""
        ordered = sorted(records, key=lambda record: str(record.get('id', '')))
        payload = json.dumps(ordered, sort_keys=True, default=str)
        return hashlib.md5(payload.encode('utf-8')).hexdigest()

    def _require_known(self, entity_type: str) -> None:
        if entity_type not in self.sources:
            raise ValidationError(f'Unknown entity type: {entity_type}')

    def _render(self, entity_type: str, records: List[Dict[str, Any]], result: SyncResult) -> List[Document]:
        documents = []
        for record in records:
            try:
                documents.append(render_record(entity_type, record))
            except Exception as e:
                logger.error(f'Failed to render {entity_type} record {record.get("id")}: {e}')
                result.errors.append(f'record {record.get("id")}: {e}')
        return documents

    async def sync_entity_type(self, entity_type: str, force: bool = False) -> SyncResult:
        """Sync every record of one entity type.

        Records are rendered and written in batches of ``batch_size``. A rejected
        batch is recorded as an error and the remaining batches still run. Entries
        left over from earlier passes are pruned only after an error-free pass.
        Calls for the same entity type are serialized, including calls made
        through sync_with_retry and force_full_sync.

        Args:
            entity_type: Entity type to sync
            force: Sync even if the records are unchanged since the last sync

        Returns:
            SyncResult for the entity type

        Raises:
            ValidationError: If the entity type is unknown
            Exception: Whatever the record source raises
        """
        self._require_known(entity_type)
        lock = self._locks[entity_type]
        if lock.locked():
            logger.info(f'{entity_type}: waiting for the sync already in progress')
        async with lock:
            return await self._sync_entity_type(entity_type, force)

    async def _sync_entity_type(self, entity_type: str, force: bool) -> SyncResult:
        start = time.monotonic()
        result = SyncResult(entity_type=entity_type)

        records = await self.sources[entity_type]()
        if not records:
            logger.info(f'{entity_type}: no records to sync')
            result.duration_ms = elapsed_ms(start, time.monotonic())
            return result

        checksum = self.calculate_checksum(records)
        status = self._statuses.get(entity_type)
        if not force and status and status.checksum == checksum and not status.last_error:
            logger.info(f'{entity_type}: no changes since last sync, skipped')
            result.skipped = True
            result.duration_ms = elapsed_ms(start, time.monotonic())
            return result

        sync_run = uuid.uuid4().hex[:12]
        documents = self._render(entity_type, records, result)

        for offset in range(0, len(documents), self.batch_size):
            batch = documents[offset:offset + self.batch_size]
            try:
                result.documents_upserted += await self.index.upsert_documents(batch, sync_run=sync_run)
            except UpstreamError as e:
                logger.error(f'{entity_type}: batch starting at {offset} failed: {e.message}')
                result.errors.append(f'batch {offset // self.batch_size}: {e.message}')

        if not result.errors:
            try:
                removed = await self.index.delete_stale(entity_type, sync_run)
                if removed:
                    logger.info(f'{entity_type}: pruned {removed} stale index entries')
            except UpstreamError as e:
                logger.warning(f'{entity_type}: failed to prune stale entries: {e.message}')
                result.errors.append(f'prune: {e.message}')

        self._statuses[entity_type] = SyncStatus(entity_type=entity_type,
                                                 last_sync=utc_now(),
                                                 checksum='' if result.errors else checksum,
                                                 document_count=result.documents_upserted,
                                                 last_error='; '.join(result.errors[:3]) or None)
        result.duration_ms = elapsed_ms(start, time.monotonic())
        logger.info(f'{entity_type}: synced {result.documents_upserted} entries from {len(records)} records '
                    f'in {result.duration_ms}ms ({len(result.errors)} errors)')
        return result

    async def sync_with_retry(self,
                              entity_type: str,
                              max_attempts: Optional[int] = None,
                              backoff: Optional[float] = None,
                              force: bool = False) -> SyncResult:
        """Sync one entity type, retrying failures with exponential backoff.

        Args:
            entity_type: Entity type to sync
            max_attempts: Number of attempts (config default if None)
            backoff: Base delay in seconds, doubled after each failed attempt
            force: Passed through to sync_entity_type

        Returns:
            SyncResult of the first successful attempt

        Raises:
            ValidationError: If the entity type is unknown
            SyncError: If every attempt fails
        """
        self._require_known(entity_type)
        max_attempts = max_attempts or self.config.sync.retry_attempts
        backoff = self.config.sync.retry_delay if backoff is None else backoff
        last_error: Optional[Exception] = None

        for attempt in range(1, max_attempts + 1):
            try:
                result = await self.sync_entity_type(entity_type, force=force)
                if attempt > 1:
                    logger.info(f'{entity_type}: sync succeeded on attempt {attempt}')
                return result
            except Exception as e:
                last_error = e
                logger.warning(f'{entity_type}: sync attempt {attempt}/{max_attempts} failed: {e}')
                if attempt < max_attempts:
                    await asyncio.sleep(backoff * 2**(attempt - 1))

        logger.error(f'{entity_type}: all {max_attempts} sync attempts failed: {last_error}')
        previous = self._statuses.get(entity_type)
        self._statuses[entity_type] = SyncStatus(entity_type=entity_type,
                                                 last_sync=previous.last_sync if previous else None,
                                                 checksum='',
                                                 document_count=previous.document_count if previous else 0,
                                                 last_error=str(last_error))
        raise SyncError(f'Synchronization of {entity_type} failed') from last_error

    async def sync_all_data(self, force: bool = False) -> Optional[SyncReport]:
        """Sync every entity type concurrently.

        A failing entity type is logged and reported without affecting the
        others. A call made while another pass is running is skipped.

        Returns:
            SyncReport, or None if a pass was already running
        """
        if self._running:
            logger.warning('Sync already in progress, skipping this run')
            return None

        self._running = True
        start = time.monotonic()
        try:
            logger.info(f'Starting sync of {len(self.entity_types)} entity types (force={force})')
            outcomes = await asyncio.gather(*(self.sync_with_retry(entity_type, force=force) for entity_type in self.entity_types),
                                            return_exceptions=True)
        finally:
            self._running = False

        results: Dict[str, SyncResult] = {}
        failed: Dict[str, str] = {}
        for entity_type, outcome in zip(self.entity_types, outcomes):
            if isinstance(outcome, BaseException):
                cause = outcome.__cause__ or outcome
                logger.error(f'{entity_type}: sync failed: {cause}')
                failed[entity_type] = str(cause)
            else:
                results[entity_type] = outcome

        report = SyncReport(results=results, failed=failed, duration_ms=elapsed_ms(start, time.monotonic()))
        logger.info(f'Sync completed in {report.duration_ms}ms. Synced: {report.total_synced}, '
                    f'Skipped: {report.total_skipped}, Failed: {len(failed)}')
        return report

    async def force_full_sync(self, entity_type: Optional[str] = None) -> Union[SyncResult, SyncReport, None]:
        """Forget checksums and resync one entity type, or all of them.

        A full resync requested while another pass is running is skipped and
        returns None, leaving the stored checksums in place.
        """
        if entity_type:
            self._require_known(entity_type)
            self._statuses.pop(entity_type, None)
            logger.info(f'Starting forced full sync for {entity_type}')
            return await self.sync_with_retry(entity_type, force=True)

        if self._running:
            logger.warning('Sync already in progress, skipping forced full sync')
            return None

        logger.info('Starting forced full sync of all data')
        self.clear_statuses()
        return await self.sync_all_data(force=True)

    def get_sync_status(self, entity_type: Optional[str] = None) -> Union[SyncStatus, Dict[str, SyncStatus]]:
        """Current status of one entity type, or of every known entity type."""
        if entity_type:
            self._require_known(entity_type)
            return self._statuses.get(entity_type, SyncStatus(entity_type=entity_type))
        return {name: self._statuses.get(name, SyncStatus(entity_type=name)) for name in self.entity_types}

    def clear_statuses(self) -> None:
        self._statuses.clear()
