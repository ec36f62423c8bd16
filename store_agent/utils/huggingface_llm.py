"""
Hugging Face hosted inference client (OpenAI compatible chat completions).
"""

from typing import Optional

import httpx

from .config import HuggingFaceConfig
from .logging_config import get_logger

logger = get_logger(__name__)


class HuggingFaceError(Exception):
    """Custom exception for Hugging Face inference errors."""
    pass


class HuggingFaceLLM:
    """Chat completion client for the Hugging Face inference router."""

    name = 'huggingface'

    def __init__(self, config: HuggingFaceConfig):
        """
        Initialize Hugging Face client.

        Args:
            config: HuggingFaceConfig instance with api key, model and router url
        """
        self.config = config
        self.model = config.model
        headers = {'Authorization': f'Bearer {config.api_key}'} if config.api_key else {}
        self.client = httpx.Client(base_url=config.base_url.rstrip('/'), headers=headers, timeout=config.timeout)

        logger.info(f'Initialized Hugging Face client with model: {self.model}')

    def generate(self, prompt: str, max_tokens: Optional[int] = None, temperature: Optional[float] = None) -> str:
        """
        Generate a completion for a single rendered prompt.

        Args:
            prompt: Fully rendered prompt text
            max_tokens: Maximum tokens to generate
            temperature: Sampling temperature

        Returns:
            Generated text

        Raises:
            HuggingFaceError: If the API key is missing or the request fails
        """
        if not self.config.api_key:
            raise HuggingFaceError('HUGGING_FACE_API_KEY is not configured')

        payload = {
            'model': self.model,
            'messages': [{'role': 'user', 'content': prompt}],
            'max_tokens': max_tokens or 1024,
            'temperature': 0.1 if temperature is None else temperature
        }

        try:
            response = self.client.post('/chat/completions', json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f'Hugging Face returned {e.response.status_code}: {e.response.text[:200]}')
            raise HuggingFaceError(f'Hugging Face request failed with status {e.response.status_code}')
        except httpx.HTTPError as e:
            logger.error(f'Hugging Face request failed: {e}')
            raise HuggingFaceError(f'Hugging Face request failed: {e}')
        except ValueError as e:
            raise HuggingFaceError(f'Invalid Hugging Face response: {e}')

        choices = data.get('choices') or []
        if not choices:
            raise HuggingFaceError('Hugging Face returned no choices')
        return (choices[0].get('message', {}).get('content') or '').strip()

    def health_check(self) -> bool:
        """
        Check that the router is reachable and the key is accepted, without inference.

        Returns:
            True if service is healthy, False otherwise
        """
        if not self.config.api_key:
            logger.warning('Hugging Face health check skipped: no API key configured')
            return False
        try:
            response = self.client.get('/models')
            return response.status_code == 200
        except httpx.HTTPError as e:
            logger.error(f'Hugging Face health check failed: {e}')
            return False

    def close(self) -> None:
        self.client.close()
