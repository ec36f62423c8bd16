"""
Embedding index service: chunking, embedding and k-NN retrieval over OpenSearch.
"""

import asyncio
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from ..models.core import Document, SearchFilters, SearchResult
from ..utils.bedrock_embed import BedrockEmbed, BedrockEmbedError
from ..utils.config import AppConfig, config
from ..utils.errors import UpstreamError
from ..utils.logging_config import get_logger
from ..utils.ollama_client import OllamaClient, OllamaError
from ..utils.opensearch_client import DOCUMENTS, OpenSearchClient, OpenSearchError
from ..utils.text_splitter import chunk_text, clean_text
from ..utils.timestamp_utils import to_iso

logger = get_logger(__name__)

# Fields stored at the top level of an index entry rather than under metadata
TOP_LEVEL_FIELDS = ('entity_type', 'entity_id', 'document_id', 'chunk_index', 'sync_run')

BACKEND_ERRORS = (OpenSearchError, BedrockEmbedError, OllamaError)


def build_embedder(app_config: AppConfig):
    """Create the embedding backend selected by configuration."""
    if app_config.embed.provider == 'ollama':
        return OllamaClient(app_config.ollama)
    return BedrockEmbed(app_config.bedrock_embed)


def _serializable(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {key: _serializable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_serializable(item) for item in value]
    return value


class EmbeddingIndex:
    """Vector index over synced domain documents.

    Entries are keyed by document id (``{id}_chunk{n}`` for the extra chunks of a
    long document), so writing a document again replaces its previous version.
    """

    def __init__(self,
                 opensearch: Optional[OpenSearchClient] = None,
                 embedder: Any = None,
                 app_config: Optional[AppConfig] = None):
        self.config = app_config or config
        self.opensearch = opensearch or OpenSearchClient(self.config.opensearch)
        self.embedder = embedder or build_embedder(self.config)
        self.chunk_size = self.config.opensearch.chunk_size
        self.chunk_overlap = self.config.opensearch.chunk_overlap
        self._ready = False

    async def initialize(self) -> None:
        """Create the document index if missing.

        Raises:
            UpstreamError: If the index cannot be created
        """
        try:
            result = await asyncio.to_thread(self.opensearch.create_index_if_not_exists, DOCUMENTS)
        except OpenSearchError as e:
            logger.error(f'Embedding index initialization failed: {e}')
            raise UpstreamError('Vector index initialization failed') from e

        if result == 'failed':
            raise UpstreamError('Vector index initialization failed')

        self._ready = True
        logger.info(f'Embedding index ready ({result}): {self.opensearch.index_for(DOCUMENTS)}')

    def is_ready(self) -> bool:
        return self._ready

    def _build_entries(self, document: Document, sync_run: Optional[str]) -> List[Dict[str, Any]]:
        content = clean_text(document.content)
        if not content:
            logger.debug(f'Skipping empty document {document.id}')
            return []

        metadata = _serializable(document.metadata)
        updated_at = to_iso(metadata.get('updated_at') or metadata.get('timestamp') or '')
        processed_at = to_iso()

        entries = []
        for index, chunk in enumerate(chunk_text(content, self.chunk_size, self.chunk_overlap)):
            entry = {
                '_id': document.id if index == 0 else f'{document.id}_chunk{index}',
                'document_id': document.id,
                'entity_type': document.entity_type,
                'entity_id': str(metadata.get('entity_id', '')),
                'chunk_index': index,
                'content': chunk,
                'metadata': {
                    **{key: value for key, value in metadata.items() if key not in TOP_LEVEL_FIELDS},
                    'content_length': len(chunk)
                },
                'processed_at': processed_at
            }
            if updated_at:
                entry['updated_at'] = updated_at
            if sync_run:
                entry['sync_run'] = sync_run
            entries.append(entry)
        return entries

    async def upsert_documents(self, documents: List[Document], sync_run: Optional[str] = None) -> int:
        """Embed and write documents, replacing earlier versions with the same ids.

        Args:
            documents: Documents to write
            sync_run: Identifier stamped on every entry, used by delete_stale

        Returns:
            Number of index entries written

        Raises:
            UpstreamError: If embedding fails or the index rejects the batch
        """
        entries = []
        for document in documents:
            entries.extend(self._build_entries(document, sync_run))
        if not entries:
            return 0

        try:
            embeddings = await asyncio.to_thread(self.embedder.embed_documents, [entry['content'] for entry in entries])
            for entry, embedding in zip(entries, embeddings):
                entry['embedding'] = embedding

            written, errors = await asyncio.to_thread(self.opensearch.bulk_index, entries, DOCUMENTS)
        except BACKEND_ERRORS as e:
            logger.error(f'Failed to upsert {len(documents)} documents: {e}')
            raise UpstreamError('Vector index write failed') from e

        if errors:
            logger.error(f'Index rejected {len(errors)} of {len(entries)} entries; first error: {errors[0]}')
            raise UpstreamError('Vector index write failed')

        logger.debug(f'Upserted {len(documents)} documents as {written} index entries')
        return written

    def _build_filters(self, filters: Optional[SearchFilters]) -> List[Dict[str, Any]]:
        if not filters:
            return []

        clauses = []
        if filters.entity_types:
            clauses.append({'terms': {'entity_type': list(filters.entity_types)}})

        if filters.date_from or filters.date_to:
            date_range = {}
            if filters.date_from:
                date_range['gte'] = to_iso(filters.date_from)
            if filters.date_to:
                date_range['lte'] = to_iso(filters.date_to)
            clauses.append({'range': {'updated_at': date_range}})

        for key, value in (filters.metadata or {}).items():
            if key in TOP_LEVEL_FIELDS:
                field = key
            elif isinstance(value, str) or (isinstance(value, list) and value and isinstance(value[0], str)):
                field = f'metadata.{key}.keyword'
            else:
                field = f'metadata.{key}'

            if isinstance(value, list):
                clauses.append({'terms': {field: [str(item) if key in TOP_LEVEL_FIELDS else item for item in value]}})
            else:
                clauses.append({'term': {field: str(value) if key in TOP_LEVEL_FIELDS else value}})

        return clauses

    async def similarity_search(self, query: str, k: int = 8, filters: Optional[SearchFilters] = None) -> List[SearchResult]:
        """Return the k entries closest to the query, restricted by filters.

        Raises:
            UpstreamError: If embedding or the search fails
        """
        if filters and filters.limit:
            k = filters.limit

        try:
            vector = await asyncio.to_thread(self.embedder.embed_query, query)
            hits = await asyncio.to_thread(self.opensearch.vector_search, vector, k, self._build_filters(filters), DOCUMENTS)
        except BACKEND_ERRORS as e:
            logger.error(f'Similarity search failed: {e}')
            raise UpstreamError('Vector search failed') from e

        results = []
        for hit in hits:
            document = hit['document']
            metadata = dict(document.get('metadata') or {})
            for key in TOP_LEVEL_FIELDS:
                if key in document:
                    metadata[key] = document[key]
            if document.get('updated_at'):
                metadata.setdefault('updated_at', document['updated_at'])
            results.append(
                SearchResult(id=hit['id'],
                             content=document.get('content', ''),
                             metadata=metadata,
                             similarity=float(hit.get('score') or 0.0),
                             entity_type=document.get('entity_type', 'unknown')))
        return results

    async def _delete(self, query: Dict[str, Any], description: str) -> int:
        try:
            deleted = await asyncio.to_thread(self.opensearch.delete_by_query, query, DOCUMENTS)
        except OpenSearchError as e:
            logger.error(f'Failed to delete {description}: {e}')
            raise UpstreamError('Vector index delete failed') from e
        logger.info(f'Removed {deleted} index entries ({description})')
        return deleted

    async def delete_stale(self, entity_type: str, sync_run: str) -> int:
        """Remove entries of an entity type that were not written by the given sync run."""
        query = {'bool': {'filter': [{'term': {'entity_type': entity_type}}], 'must_not': [{'term': {'sync_run': sync_run}}]}}
        return await self._delete(query, f'stale {entity_type}')

    async def delete_by_entity_type(self, entity_type: str) -> int:
        return await self._delete({'term': {'entity_type': entity_type}}, f'all {entity_type}')

    async def clear(self) -> int:
        """Remove every entry from the index."""
        return await self._delete({'match_all': {}}, 'all entries')

    async def get_stats(self) -> Dict[str, Any]:
        """Entry counts per entity type and the most recent processing time."""
        aggregations = {
            'by_type': {
                'terms': {
                    'field': 'entity_type',
                    'size': 100
                },
                'aggs': {
                    'last_processed': {
                        'max': {
                            'field': 'processed_at'
                        }
                    }
                }
            },
            'last_processed': {
                'max': {
                    'field': 'processed_at'
                }
            }
        }
        try:
            total = await asyncio.to_thread(self.opensearch.count, None, DOCUMENTS)
            result = await asyncio.to_thread(self.opensearch.aggregate, aggregations, None, DOCUMENTS)
        except OpenSearchError as e:
            logger.error(f'Failed to read index stats: {e}')
            raise UpstreamError('Failed to get vector store stats') from e

        by_type = {bucket['key']: bucket['doc_count'] for bucket in result.get('by_type', {}).get('buckets', [])}
        last_processed = result.get('last_processed', {}).get('value_as_string')
        return {
            'total_documents': total,
            'documents_by_type': by_type,
            'last_updated': last_processed,
            'vector_dimension': self.config.opensearch.dimension,
            'index_name': self.opensearch.index_for(DOCUMENTS)
        }

    async def health_check(self) -> bool:
        return await asyncio.to_thread(self.opensearch.health_check)

    def close(self) -> None:
        close = getattr(self.embedder, 'close', None)
        if callable(close):
            close()
