"""
Enhanced search: filter translation, relevance scoring and result insights on top of the embedding index.
"""

import re
from collections import Counter
from dataclasses import replace
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from ..models.core import SearchFilters, SearchResult
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import to_datetime, utc_now
from .embedding_index import EmbeddingIndex

logger = get_logger(__name__)

# Query hint values to indexed entity types
HINT_ENTITY_TYPES = {
    'invoice': 'invoices',
    'vendor': 'suppliers',
    'supplier': 'suppliers',
    'product': 'products',
    'user': 'users',
    'client': 'clients',
    'account': 'accounts'
}

PRIORITY_BOOST = {'high': 0.3, 'medium': 0.2, 'low': 0.1}
RECENT_DAYS = 7
_DMY = re.compile(r'^(\d{2})/(\d{2})/(\d{4})$')


def _normalize_date_hint(value: str) -> str:
    match = _DMY.match(value)
    if match:
        day, month, year = match.groups()
        return f'{year}-{month}-{day}'
    return value


def _overlap(words: List[str], values: List[str]) -> float:
    if not values:
        return 0.0
    matches = sum(1 for value in values if any(word in str(value).lower() for word in words))
    return matches / len(values)


def build_filters(filters: Optional[SearchFilters]) -> Tuple[SearchFilters, Dict[str, Any]]:
    """Translate caller filters and query hints into index filters.

    ``type`` and ``entity_type`` hints become entity type restrictions (unless the
    caller already gave an explicit list), ``id`` becomes an ``entity_id`` term and
    ``date`` is returned as a ranking hint instead of a filter.

    Returns:
        Tuple of (filters for the index, ranking hints)
    """
    if filters is None:
        return SearchFilters(), {}

    metadata = dict(filters.metadata or {})
    entity_types = list(filters.entity_types or [])
    explicit_types = bool(entity_types)
    hints: Dict[str, Any] = {}

    for key in ('type', 'entity_type'):
        value = metadata.pop(key, None)
        if not value:
            continue
        mapped = HINT_ENTITY_TYPES.get(str(value).lower(), str(value))
        if not explicit_types and mapped not in entity_types:
            entity_types.append(mapped)

    if 'id' in metadata:
        metadata['entity_id'] = str(metadata.pop('id'))

    if 'date' in metadata:
        hints['date'] = _normalize_date_hint(str(metadata.pop('date')))

    return replace(filters, entity_types=entity_types or None, metadata=metadata), hints


class EnhancedSearch:
    """Similarity search with relevance re-ranking and result summaries."""

    def __init__(self, index: EmbeddingIndex):
        self.index = index

    async def search(self, query: str, filters: Optional[SearchFilters] = None, k: int = 8) -> List[SearchResult]:
        """Search the index and rank results by relevance.

        Args:
            query: Search text
            filters: Caller filters, may contain query hints in ``metadata``
            k: Number of results when filters carry no limit

        Returns:
            Results sorted by relevance score, highest first

        Raises:
            UpstreamError: If the index search fails
        """
        index_filters, hints = build_filters(filters)
        results = await self.index.similarity_search(query, index_filters.limit or k, index_filters)

        for result in results:
            result.relevance_score = self.calculate_relevance_score(result, query, index_filters, hints)
        results.sort(key=lambda result: (result.relevance_score, result.similarity), reverse=True)

        logger.debug(f'Enhanced search returned {len(results)} results (entity types: {index_filters.entity_types}, '
                     f'metadata: {index_filters.metadata}, hints: {hints})')
        return results

    @staticmethod
    def calculate_relevance_score(result: SearchResult,
                                  query: str,
                                  filters: Optional[SearchFilters] = None,
                                  hints: Optional[Dict[str, Any]] = None) -> float:
        """Score a result between 0.5 and 1.0 from metadata, keyword and recency signals."""
        metadata = result.metadata or {}
        words = [word for word in query.lower().split() if word]
        score = 0.5

        if filters:
            for key, value in (filters.metadata or {}).items():
                if key in metadata and str(metadata[key]) == str(value):
                    score += 0.2
            if filters.entity_types and result.entity_type in filters.entity_types:
                score += 0.3

        score += PRIORITY_BOOST.get(metadata.get('priority'), 0.0)

        if words:
            score += _overlap(words, metadata.get('keywords') or []) * 0.25
            score += _overlap(words, metadata.get('tags') or []) * 0.2
            content_words = result.content.lower().split()
            score += sum(1 for word in words if any(word in content_word for content_word in content_words)) / len(words) * 0.2

        confidence = metadata.get('confidence_score')
        if isinstance(confidence, (int, float)):
            score += confidence * 0.1

        date_hint = (hints or {}).get('date')
        if date_hint:
            date_values = [str(value) for key, value in metadata.items() if key.endswith('_date') or key.endswith('_at')]
            if date_hint in result.content or any(value.startswith(date_hint) for value in date_values):
                score += 0.2

        updated_at = to_datetime(metadata.get('updated_at'))
        if updated_at and utc_now() - updated_at < timedelta(days=RECENT_DAYS):
            score += 0.1

        return round(min(score, 1.0), 4)

    @staticmethod
    def facets(results: List[SearchResult]) -> Dict[str, Dict[str, int]]:
        """Count results per entity type and per update month (YYYY-MM)."""
        entity_types = Counter(result.entity_type for result in results)
        months = Counter()
        for result in results:
            updated_at = to_datetime(result.metadata.get('updated_at'))
            if updated_at:
                months[updated_at.strftime('%Y-%m')] += 1
        return {'entity_types': dict(entity_types), 'date_ranges': dict(months)}

    def extract_insights(self, results: List[SearchResult]) -> List[str]:
        facets = self.facets(results)
        insights = []

        top_types = Counter(facets['entity_types']).most_common(3)
        if top_types:
            insights.append('Most common document types: ' + ', '.join(f'{name} ({count})' for name, count in top_types))

        recent_months = sorted(facets['date_ranges'].items(), reverse=True)[:3]
        if recent_months:
            insights.append('Recent activity periods: ' + ', '.join(f'{month} ({count} docs)' for month, count in recent_months))

        high_priority = [result for result in results if result.metadata.get('priority') == 'high']
        if high_priority:
            insights.append(f'{len(high_priority)} high priority records need attention')

        return insights

    def generate_recommendations(self, results: List[SearchResult]) -> List[str]:
        facets = self.facets(results)
        recommendations = []

        top_types = Counter(facets['entity_types']).most_common(2)
        if top_types:
            recommendations.append('Consider filtering by entity types: ' + ', '.join(name for name, _ in top_types))

        if facets['date_ranges']:
            latest = max(facets['date_ranges'])
            recommendations.append(f'Consider filtering by recent date range around {latest}')

        return recommendations

    def build_context(self, results: List[SearchResult]) -> str:
        """Render results, insights and recommendations as prompt context."""
        if not results:
            return ''

        sections = ['SEARCH RESULTS:']
        for position, result in enumerate(results, 1):
            sections.append(f'[{position}] {result.entity_type} (relevance {result.relevance_score:.2f})\n{result.content}')

        insights = self.extract_insights(results)
        if insights:
            sections.append('INSIGHTS:\n' + '\n'.join(f'- {insight}' for insight in insights))

        recommendations = self.generate_recommendations(results)
        if recommendations:
            sections.append('RECOMMENDATIONS:\n' + '\n'.join(f'- {item}' for item in recommendations))

        return '\n\n'.join(sections)
