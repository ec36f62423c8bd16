"""
Ollama model server client for local text generation and embeddings.
"""

from typing import Any, Dict, List, Optional

import httpx

from .config import OllamaConfig
from .logging_config import get_logger

logger = get_logger(__name__)


class OllamaError(Exception):
    """Custom exception for Ollama errors."""
    pass


class OllamaClient:
    """HTTP client for an Ollama server (generation and embeddings)."""

    name = 'ollama'

    def __init__(self, config: OllamaConfig):
        """
        Initialize Ollama client.

        Args:
            config: OllamaConfig instance with server url and model names
        """
        self.config = config
        self.model = config.chat_model
        self.client = httpx.Client(base_url=config.base_url.rstrip('/'), timeout=config.timeout)

        logger.info(f'Initialized Ollama client for {config.base_url} with model: {self.model}')

    def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = self.client.post(path, json=payload)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f'Ollama {path} returned {e.response.status_code}: {e.response.text[:200]}')
            raise OllamaError(f'Ollama request failed with status {e.response.status_code}')
        except httpx.HTTPError as e:
            logger.error(f'Ollama {path} request failed: {e}')
            raise OllamaError(f'Ollama request failed: {e}')
        except ValueError as e:
            logger.error(f'Ollama {path} returned invalid JSON: {e}')
            raise OllamaError(f'Invalid Ollama response: {e}')

    def generate(self, prompt: str, max_tokens: Optional[int] = None, temperature: Optional[float] = None) -> str:
        """
        Generate a completion with the configured chat model.

        Args:
            prompt: Fully rendered prompt text
            max_tokens: Maximum tokens to generate
            temperature: Sampling temperature

        Returns:
            Generated text

        Raises:
            OllamaError: If the request fails
        """
        options: Dict[str, Any] = {}
        if max_tokens:
            options['num_predict'] = max_tokens
        if temperature is not None:
            options['temperature'] = temperature

        result = self._post('/api/generate', {'model': self.model, 'prompt': prompt, 'stream': False, 'options': options})
        logger.debug(f'Ollama generated {result.get("eval_count", "?")} tokens')
        return (result.get('response') or '').strip()

    def embed_query(self, text: str) -> List[float]:
        """
        Generate an embedding with the configured embedding model.

        Raises:
            OllamaError: If the request fails or returns no embedding
        """
        result = self._post('/api/embeddings', {'model': self.config.embedding_model, 'prompt': text})
        embedding = result.get('embedding')
        if not embedding:
            raise OllamaError('Ollama returned an empty embedding')
        return embedding

    def embed_document(self, text: str) -> List[float]:
        return self.embed_query(text)

    def embed_documents(self, texts: List[str]) -> List[List[float]]:
        return [self.embed_query(text) for text in texts]

    def list_models(self) -> List[str]:
        """Return the names of the models available on the server."""
        try:
            response = self.client.get('/api/tags')
            response.raise_for_status()
            return [model.get('name', '') for model in response.json().get('models', [])]
        except (httpx.HTTPError, ValueError) as e:
            raise OllamaError(f'Failed to list Ollama models: {e}')

    def health_check(self) -> bool:
        """
        Check that the server answers and the chat model is pulled.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            models = self.list_models()
            available = any(name == self.model or name.split(':')[0] == self.model for name in models)
            if not available:
                logger.warning(f'Ollama model {self.model} is not available, found: {models}')
            return available
        except Exception as e:
            logger.error(f'Ollama health check failed: {e}')
            return False

    def close(self) -> None:
        self.client.close()
