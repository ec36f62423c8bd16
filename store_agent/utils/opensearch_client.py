"""
OpenSearch client wrapper for the document vector index and conversation storage.
"""

import time
from typing import Any, Dict, List, Optional, Tuple

import boto3
from opensearchpy import OpenSearch, RequestsHttpConnection, helpers
from opensearchpy.exceptions import NotFoundError as OpenSearchNotFoundError
from opensearchpy.exceptions import OpenSearchException
from requests_aws4auth import AWS4Auth

from .config import OpenSearchConfig
from .logging_config import get_logger

logger = get_logger(__name__)

DOCUMENTS = 'documents'
CONVERSATIONS = 'conversations'
MESSAGES = 'messages'


class OpenSearchError(Exception):
    """Custom exception for OpenSearch errors."""
    pass


class OpenSearchClient:
    """OpenSearch client with optional AWS authentication and error handling."""

    def __init__(self, config: OpenSearchConfig):
        """
        Initialize OpenSearch client.

        Args:
            config: OpenSearchConfig instance with connection parameters
        """
        self.config = config

        auth = None
        if config.use_aws_auth:
            credentials = boto3.Session().get_credentials()
            auth = AWS4Auth(region=config.region, service='aoss', refreshable_credentials=credentials)

        endpoint = config.endpoint
        if '://' in endpoint:
            # Remove protocol if present
            endpoint = endpoint.split('://', 1)[1]

        self.client = OpenSearch(hosts=[{
            'host': endpoint,
            'port': config.port
        }],
                                 http_auth=auth,
                                 use_ssl=config.use_ssl or config.use_aws_auth,
                                 verify_certs=config.use_ssl or config.use_aws_auth,
                                 connection_class=RequestsHttpConnection)

        logger.info(f'Initialized OpenSearch client for endpoint: {config.endpoint}')

    def index_for(self, index_type: str = DOCUMENTS) -> str:
        """Return the physical index name for an index type."""
        return f'{self.config.index_name}_{index_type}'

    def _index_body(self, index_type: str) -> Dict[str, Any]:
        if index_type == DOCUMENTS:
            return {
                'mappings': {
                    'properties': {
                        'document_id': {
                            'type': 'keyword'
                        },
                        'entity_type': {
                            'type': 'keyword'
                        },
                        'entity_id': {
                            'type': 'keyword'
                        },
                        'sync_run': {
                            'type': 'keyword'
                        },
                        'chunk_index': {
                            'type': 'integer'
                        },
                        'content': {
                            'type': 'text'
                        },
                        'embedding': {
                            'type': 'knn_vector',
                            'dimension': self.config.dimension,
                            'method': {
                                'name': 'hnsw',
                                'space_type': 'cosinesimil',
                                'engine': 'nmslib'
                            }
                        },
                        'metadata': {
                            'type': 'object',
                            'dynamic': True
                        },
                        'updated_at': {
                            'type': 'date'
                        },
                        'processed_at': {
                            'type': 'date'
                        }
                    }
                },
                'settings': {
                    'index': {
                        'knn': True,
                        'knn.algo_param.ef_search': 100
                    }
                }
            }
        if index_type == CONVERSATIONS:
            return {
                'mappings': {
                    'properties': {
                        'id': {
                            'type': 'keyword'
                        },
                        'user_id': {
                            'type': 'keyword'
                        },
                        'title': {
                            'type': 'text',
                            'fields': {
                                'raw': {
                                    'type': 'keyword'
                                }
                            }
                        },
                        'created_at': {
                            'type': 'date'
                        },
                        'updated_at': {
                            'type': 'date'
                        }
                    }
                }
            }
        # messages
        return {
            'mappings': {
                'properties': {
                    'id': {
                        'type': 'keyword'
                    },
                    'conversation_id': {
                        'type': 'keyword'
                    },
                    'role': {
                        'type': 'keyword'
                    },
                    'content': {
                        'type': 'text',
                        'fields': {
                            'raw': {
                                'type': 'keyword',
                                'ignore_above': 8191
                            }
                        }
                    },
                    'metadata': {
                        'type': 'object',
                        'enabled': False
                    },
                    'created_at': {
                        'type': 'date'
                    }
                }
            }
        }

    def create_index_if_not_exists(self, index_type: str = DOCUMENTS) -> str:
        """
        Create index if it doesn't exist.

        Args:
            index_type: Type of index (documents, conversations or messages)

        Returns:
            'exists', 'created' or 'failed'
        """
        index_name = self.index_for(index_type)

        try:
            if self.client.indices.exists(index=index_name):
                logger.debug(f'Index {index_name} already exists')
                return 'exists'

            response = self.client.indices.create(index=index_name, body=self._index_body(index_type))
            logger.info(f'Created index {index_name}')
            if not response.get('acknowledged', False):
                return 'failed'
            if self.config.use_aws_auth:
                # Serverless collections need time before a new index accepts writes
                logger.info(f'Waiting 15s for index {index_name} sync-up...')
                time.sleep(15)
            return 'created'
        except OpenSearchException as e:
            logger.error(f'Error creating index {index_name}: {e}')
            raise OpenSearchError(f'Failed to create index: {e}')
        except Exception as e:
            logger.error(f'Unexpected error creating index {index_name}: {e}')
            raise OpenSearchError(f'Unexpected error creating index: {e}')

    def bulk_index(self, documents: List[Dict[str, Any]], index_type: str = DOCUMENTS) -> Tuple[int, List[Any]]:
        """
        Index many documents in one request, replacing existing ids.

        Args:
            documents: Documents to index, each carrying its id under '_id'
            index_type: Type of index

        Returns:
            Tuple of (number of documents written, list of per-item errors)
        """
        index_name = self.index_for(index_type)
        actions = []
        for document in documents:
            body = {key: value for key, value in document.items() if key != '_id'}
            actions.append({'_op_type': 'index', '_index': index_name, '_id': document['_id'], '_source': body})

        try:
            success, errors = helpers.bulk(self.client, actions, raise_on_error=False, refresh=True)
            if errors:
                logger.warning(f'Bulk index into {index_name} reported {len(errors)} errors')
            else:
                logger.debug(f'Bulk indexed {success} documents into {index_name}')
            return success, list(errors)
        except OpenSearchException as e:
            logger.error(f'Error bulk indexing into {index_name}: {e}')
            raise OpenSearchError(f'Bulk index failed: {e}')
        except Exception as e:
            logger.error(f'Unexpected error bulk indexing into {index_name}: {e}')
            raise OpenSearchError(f'Unexpected error in bulk index: {e}')

    def index_document(self, document: Dict[str, Any], doc_id: Optional[str] = None, index_type: str = DOCUMENTS) -> bool:
        """
        Index a single document in OpenSearch.

        Args:
            document: Document to index
            doc_id: Explicit document id, replaces an existing document with the same id
            index_type: Type of index

        Returns:
            True if indexing was successful, False otherwise
        """
        index_name = self.index_for(index_type)

        try:
            response = self.client.index(index=index_name, body=document, id=doc_id, refresh=True)

            success = response.get('result') in ['created', 'updated']
            if success:
                logger.debug(f'Indexed document in {index_name}')
            else:
                logger.warning(f'Unexpected result indexing document: {response}')

            return success

        except OpenSearchException as e:
            logger.error(f'Error indexing document: {e}')
            raise OpenSearchError(f'Failed to index document: {e}')
        except Exception as e:
            logger.error(f'Unexpected error indexing document: {e}')
            raise OpenSearchError(f'Unexpected error indexing document: {e}')

    def get_document(self, doc_id: str, index_type: str = DOCUMENTS) -> Optional[Dict[str, Any]]:
        """
        Get a specific document by id.

        Args:
            doc_id: Document ID to retrieve
            index_type: Type of index

        Returns:
            Document source if found, None otherwise
        """
        index_name = self.index_for(index_type)

        try:
            response = self.client.get(index=index_name, id=doc_id, _source_excludes=['embedding'])
            return response['_source'] if response.get('found') else None
        except OpenSearchNotFoundError:
            return None
        except OpenSearchException as e:
            logger.error(f'Error getting document {doc_id}: {e}')
            raise OpenSearchError(f'Failed to get document: {e}')
        except Exception as e:
            logger.error(f'Unexpected error getting document {doc_id}: {e}')
            raise OpenSearchError(f'Unexpected error getting document: {e}')

    def update_document(self, doc_id: str, fields: Dict[str, Any], index_type: str = DOCUMENTS) -> bool:
        """
        Update selected fields of an existing document, leaving the others as stored.

        Args:
            doc_id: Document ID to update
            fields: Field values to write
            index_type: Type of index

        Returns:
            True if the document exists, False otherwise
        """
        index_name = self.index_for(index_type)

        try:
            response = self.client.update(index=index_name, id=doc_id, body={'doc': fields}, refresh=True)
            logger.debug(f'Updated document {doc_id} in {index_name}: {response.get("result")}')
            return response.get('result') in ['updated', 'noop']
        except OpenSearchNotFoundError:
            logger.warning(f'Document {doc_id} not found for update')
            return False
        except OpenSearchException as e:
            logger.error(f'Error updating document {doc_id}: {e}')
            raise OpenSearchError(f'Failed to update document: {e}')
        except Exception as e:
            logger.error(f'Unexpected error updating document {doc_id}: {e}')
            raise OpenSearchError(f'Unexpected error updating document: {e}')

    def vector_search(self,
                      query_vector: List[float],
                      top_k: int = 8,
                      filters: Optional[List[Dict[str, Any]]] = None,
                      index_type: str = DOCUMENTS) -> List[Dict[str, Any]]:
        """
        Perform vector similarity search.

        Args:
            query_vector: Query vector for similarity search
            top_k: Number of results to return
            filters: OpenSearch filter clauses applied to the k-NN query
            index_type: Type of index

        Returns:
            List of search results with scores and documents
        """
        index_name = self.index_for(index_type)

        try:
            search_body = {
                'size': top_k,
                'query': {
                    'bool': {
                        'must': [{
                            'knn': {
                                'embedding': {
                                    'vector': query_vector,
                                    'k': top_k
                                }
                            }
                        }],
                        'filter': filters or []
                    }
                },
                '_source': {
                    'excludes': ['embedding']  # Don't return embedding in results
                }
            }

            response = self.client.search(index=index_name, body=search_body)

            results = []
            for hit in response['hits']['hits']:
                result = {'id': hit['_id'], 'score': hit['_score'], 'document': hit['_source']}
                results.append(result)

            logger.debug(f'Vector search returned {len(results)} results from {index_name}')
            return results

        except OpenSearchException as e:
            logger.error(f'Error performing vector search: {e}')
            raise OpenSearchError(f'Vector search failed: {e}')
        except Exception as e:
            logger.error(f'Unexpected error in vector search: {e}')
            raise OpenSearchError(f'Unexpected error in vector search: {e}')

    def search(self,
               query: Dict[str, Any],
               size: int = 20,
               offset: int = 0,
               sort: Optional[List[Dict[str, Any]]] = None,
               index_type: str = DOCUMENTS) -> Tuple[List[Dict[str, Any]], int]:
        """Run a plain (non-vector) query.

        Args:
            query: OpenSearch query clause
            size: Page size
            offset: Number of hits to skip
            sort: Sort clauses
            index_type: Type of index

        Returns:
            Tuple of (document sources, total hit count)
        """
        index_name = self.index_for(index_type)
        search_body = {'query': query, 'size': size, 'from': offset, '_source': {'excludes': ['embedding']}}
        if sort:
            search_body['sort'] = sort

        try:
            response = self.client.search(index=index_name, body=search_body)
            hits = [hit['_source'] for hit in response['hits']['hits']]
            total = response['hits']['total']
            return hits, total['value'] if isinstance(total, dict) else int(total)
        except OpenSearchException as e:
            logger.error(f'Error searching {index_name}: {e}')
            raise OpenSearchError(f'Search failed: {e}')

    def count(self, query: Optional[Dict[str, Any]] = None, index_type: str = DOCUMENTS) -> int:
        """Count documents matching a query (all documents if None)."""
        index_name = self.index_for(index_type)
        body = {'query': query} if query else None

        try:
            return int(self.client.count(index=index_name, body=body)['count'])
        except OpenSearchException as e:
            logger.error(f'Error counting documents in {index_name}: {e}')
            raise OpenSearchError(f'Count failed: {e}')

    def aggregate(self,
                  aggregations: Dict[str, Any],
                  query: Optional[Dict[str, Any]] = None,
                  index_type: str = DOCUMENTS) -> Dict[str, Any]:
        """Run aggregations without returning hits."""
        index_name = self.index_for(index_type)
        body = {'size': 0, 'aggs': aggregations}
        if query:
            body['query'] = query

        try:
            response = self.client.search(index=index_name, body=body)
            return response.get('aggregations', {})
        except OpenSearchException as e:
            logger.error(f'Error aggregating {index_name}: {e}')
            raise OpenSearchError(f'Aggregation failed: {e}')

    def delete_document(self, doc_id: str, index_type: str = DOCUMENTS) -> bool:
        """
        Delete a document from the index.

        Args:
            doc_id: Document ID to delete
            index_type: Type of index

        Returns:
            True if deletion was successful, False if the document did not exist
        """
        index_name = self.index_for(index_type)

        try:
            response = self.client.delete(index=index_name, id=doc_id, refresh=True)

            success = response.get('result') == 'deleted'
            if success:
                logger.debug(f'Deleted document {doc_id} from {index_name}')
            else:
                logger.warning(f'Document {doc_id} not found for deletion')

            return success

        except OpenSearchException as e:
            # OpenSearchException args: (status_code, error_type, error_info)
            if len(e.args) >= 2 and (e.args[0] == 404 or e.args[1] == 'not_found'):
                logger.warning(f'Document {doc_id} not found for deletion')
                return False
            logger.error(f'Error deleting document {doc_id}: {e}')
            raise OpenSearchError(f'Failed to delete document: {e}')
        except Exception as e:
            logger.error(f'Unexpected error deleting document {doc_id}: {e}')
            raise OpenSearchError(f'Unexpected error deleting document: {e}')

    def delete_by_query(self, query: Dict[str, Any], index_type: str = DOCUMENTS) -> int:
        """
        Delete every document matching a query.

        Args:
            query: OpenSearch query clause
            index_type: Type of index

        Returns:
            Number of deleted documents
        """
        index_name = self.index_for(index_type)

        try:
            response = self.client.delete_by_query(index=index_name, body={'query': query}, refresh=True, conflicts='proceed')
            deleted = int(response.get('deleted', 0))
            logger.debug(f'Deleted {deleted} documents from {index_name}')
            return deleted
        except OpenSearchException as e:
            logger.error(f'Error deleting by query from {index_name}: {e}')
            raise OpenSearchError(f'Delete by query failed: {e}')
        except Exception as e:
            logger.error(f'Unexpected error deleting by query from {index_name}: {e}')
            raise OpenSearchError(f'Unexpected error in delete by query: {e}')

    def health_check(self) -> bool:
        """
        Perform a health check on the OpenSearch service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            return bool(self.client.ping())
        except Exception as e:
            logger.error(f'OpenSearch health check failed: {e}')
            return False
