"""
Amazon Bedrock embedding client for index entries and search queries.

Titan models embed one text per request; Cohere models accept up to
``COHERE_BATCH_SIZE`` texts per request.
"""

import json
import random
import time
from typing import Any, Dict, List

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .config import BedrockEmbedConfig
from .logging_config import get_logger

logger = get_logger(__name__)

COHERE_BATCH_SIZE = 96
COHERE_MAX_CHARS = 2048
RETRYABLE_CODES = ('ThrottlingException', 'ServiceUnavailableException', 'ModelNotReadyException', 'InternalServerException')


class BedrockEmbedError(Exception):
    """Custom exception for Bedrock embedding errors."""
    pass


class BedrockEmbed:
    """Embedding backend over the Bedrock runtime ``invoke_model`` API."""

    def __init__(self, config: BedrockEmbedConfig):
        """
        Initialize Bedrock embedding client.

        Args:
            config: BedrockEmbedConfig instance with region, model and retry settings

        Raises:
            BedrockEmbedError: If the model family is not supported
        """
        self.config = config
        self.model_id = config.model_id
        self.dimension = config.dimension

        model = self.model_id.lower()
        if 'titan' in model:
            self.family = 'titan'
        elif 'cohere' in model:
            if self.dimension != 1024:
                raise BedrockEmbedError(f'Cohere models only support 1024 dimensions, got {self.dimension}')
            self.family = 'cohere'
        else:
            raise BedrockEmbedError(f'Unsupported embedding model: {self.model_id}')

        self.runtime = boto3.client(service_name='bedrock-runtime', region_name=config.region)
        logger.info(f'Initialized Bedrock Embed client with model: {self.model_id}')

    def _invoke(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Invoke the model, retrying throttling and transient service errors with jittered backoff."""
        body = json.dumps(payload)
        attempts = self.config.retry_attempts

        for attempt in range(1, attempts + 1):
            try:
                response = self.runtime.invoke_model(body=body,
                                                     modelId=self.model_id,
                                                     accept='application/json',
                                                     contentType='application/json')
                return json.loads(response['body'].read())
            except ClientError as e:
                code = e.response.get('Error', {}).get('Code', '')
                if code not in RETRYABLE_CODES or attempt == attempts:
                    logger.error(f'Bedrock Embed request failed ({code}) on attempt {attempt}: {e}')
                    raise BedrockEmbedError(f'Bedrock Embed request failed: {code or e}') from e
                logger.warning(f'Bedrock Embed throttled ({code}), attempt {attempt}/{attempts}')
            except BotoCoreError as e:
                if attempt == attempts:
                    raise BedrockEmbedError(f'Bedrock Embed failed after {attempts} attempts: {e}') from e
                logger.warning(f'Bedrock Embed attempt {attempt}/{attempts} failed: {e}')

            time.sleep(self.config.retry_delay * 2**(attempt - 1) + random.uniform(0, 0.5))

        raise BedrockEmbedError(f'Bedrock Embed failed after {attempts} attempts')

    def _embed_titan(self, text: str) -> List[float]:
        result = self._invoke({'inputText': text, 'dimensions': self.dimension})
        return result['embedding']

    def _embed_cohere(self, texts: List[str], input_type: str) -> List[List[float]]:
        result = self._invoke({'input_type': input_type, 'texts': [text[:COHERE_MAX_CHARS] for text in texts]})
        return result['embeddings']

    def _embed_many(self, texts: List[str], input_type: str) -> List[List[float]]:
        # Blank texts get a zero vector so positions stay aligned with the input
        vectors: List[List[float]] = [[0.0] * self.dimension for _ in texts]
        pending = [(position, text) for position, text in enumerate(texts) if text and text.strip()]
        if len(pending) < len(texts):
            logger.warning(f'{len(texts) - len(pending)} empty texts embedded as zero vectors')

        try:
            if self.family == 'titan':
                for position, text in pending:
                    vectors[position] = self._embed_titan(text)
            else:
                for offset in range(0, len(pending), COHERE_BATCH_SIZE):
                    batch = pending[offset:offset + COHERE_BATCH_SIZE]
                    embeddings = self._embed_cohere([text for _, text in batch], input_type)
                    for (position, _), embedding in zip(batch, embeddings):
                        vectors[position] = embedding
        except (KeyError, IndexError, TypeError) as e:
            raise BedrockEmbedError(f'Malformed embedding response from {self.model_id}: {e}') from e

        return vectors

    def embed_documents(self, texts: List[str]) -> List[List[float]]:
        """
        Embed index entry texts.

        Args:
            texts: Texts to embed

        Returns:
            One vector per text, in input order

        Raises:
            BedrockEmbedError: If a request fails after retries
        """
        return self._embed_many(texts, 'search_document')

    def embed_query(self, text: str) -> List[float]:
        """Embed a search query. Raises BedrockEmbedError on failure."""
        return self._embed_many([text], 'search_query')[0]

    def health_check(self) -> bool:
        """Embed a short probe text and check the vector dimension."""
        try:
            return len(self.embed_query('health check')) == self.dimension
        except BedrockEmbedError as e:
            logger.error(f'Bedrock Embed health check failed: {e}')
            return False
