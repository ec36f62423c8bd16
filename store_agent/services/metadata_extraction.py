"""
Heuristic extraction of search hints from a free-text query.

Matching is keyword based and bilingual (English and Arabic). It is a best-effort
narrowing step: a query that matches nothing simply runs unfiltered.
"""

import re
from typing import Any, Dict, Tuple

DATE_PATTERN = re.compile(r'(\d{4}-\d{2}-\d{2})|(\d{2}/\d{2}/\d{4})')
ID_PATTERN = re.compile(r'(?:\bid\b|رقم)\s*[:#]?\s*(\d+)', re.IGNORECASE)

INVOICE_KEYWORDS = ('فاتورة', 'invoice')

# Later matches win, so the more specific subjects come last
ENTITY_KEYWORDS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ('account', ('حساب', 'account')),
    ('client', ('عميل', 'client', 'customer')),
    ('vendor', ('مورد', 'vendor', 'supplier')),
    ('product', ('منتج', 'product')),
    ('user', ('مستخدم', 'user')),
)


def extract_metadata_from_query(query: str) -> Dict[str, Any]:
    """Extract coarse search hints from a query.

    Returns a dict with any of the keys ``type`` (``'invoice'``), ``entity_type``
    (``'account'``, ``'client'``, ``'vendor'``, ``'product'`` or ``'user'``),
    ``date`` (the first date found, as written) and ``id`` (digits following
    "id" or "رقم").

    Example:
        >>> extract_metadata_from_query('invoice from 2024-01-15')
        {'type': 'invoice', 'date': '2024-01-15'}
    """
    metadata: Dict[str, Any] = {}
    if not query:
        return metadata

    text = query.lower()

    if any(keyword in text for keyword in INVOICE_KEYWORDS):
        metadata['type'] = 'invoice'

    for entity_type, keywords in ENTITY_KEYWORDS:
        if any(keyword in text for keyword in keywords):
            metadata['entity_type'] = entity_type

    date_match = DATE_PATTERN.search(query)
    if date_match:
        metadata['date'] = date_match.group(0)

    id_match = ID_PATTERN.search(query)
    if id_match:
        metadata['id'] = id_match.group(1)

    return metadata
