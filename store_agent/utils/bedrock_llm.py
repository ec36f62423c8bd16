"""
Amazon Bedrock generation backend over the Converse streaming API.
"""

import random
import time
from typing import Any, Dict, Optional, Tuple

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .config import BedrockLLMConfig
from .logging_config import get_logger

logger = get_logger(__name__)

RETRYABLE_CODES = ('ThrottlingException', 'ServiceUnavailableException', 'ModelNotReadyException', 'InternalServerException')

# Cross-region inference profile ids carry a geography prefix, e.g. us.anthropic.claude-...
INFERENCE_PROFILE_PREFIXES = ('us.', 'eu.', 'apac.', 'global.')


class BedrockLLMError(Exception):
    """Custom exception for Bedrock LLM errors."""
    pass


class BedrockLLM:
    """Text generation with a Bedrock foundation model or inference profile."""

    name = 'bedrock'

    def __init__(self, config: BedrockLLMConfig):
        """
        Initialize Bedrock LLM client.

        Args:
            config: BedrockLLMConfig instance with region, model and generation defaults
        """
        self.config = config
        self.model_id = config.model_id

        # Retries are handled here so throttling can be told apart from hard failures
        self.runtime = boto3.client('bedrock-runtime',
                                    region_name=config.region,
                                    config=BotoConfig(connect_timeout=60, read_timeout=120, retries={'max_attempts': 0}))
        self.control = boto3.client('bedrock', region_name=config.region)

        logger.info(f'Initialized Bedrock LLM client with model: {self.model_id}')

    def _stream(self, request: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        text = []
        usage: Dict[str, Any] = {}
        for event in self.runtime.converse_stream(**request).get('stream') or []:
            if 'contentBlockDelta' in event:
                text.append(event['contentBlockDelta']['delta'].get('text', ''))
            elif 'metadata' in event:
                usage = {**event['metadata'].get('usage', {}), **event['metadata'].get('metrics', {})}
            elif 'messageStop' in event and event['messageStop'].get('stopReason') == 'max_tokens':
                logger.warning(f'Bedrock response truncated at {request["inferenceConfig"]["maxTokens"]} tokens')
        return ''.join(text), usage

    def generate(self, prompt: str, max_tokens: Optional[int] = None, temperature: Optional[float] = None) -> str:
        """
        Generate a completion for a single rendered prompt.

        Throttling and transient service errors are retried with jittered
        exponential backoff; validation and access errors fail immediately.

        Args:
            prompt: Fully rendered prompt text
            max_tokens: Maximum tokens to generate (config default if None)
            temperature: Sampling temperature (config default if None)

        Returns:
            Generated text

        Raises:
            BedrockLLMError: If generation fails
        """
        request = {
            'modelId': self.model_id,
            'messages': [{'role': 'user', 'content': [{'text': prompt}]}],
            'inferenceConfig': {
                'maxTokens': max_tokens or self.config.max_tokens,
                'temperature': self.config.temperature if temperature is None else temperature
            }
        }
        attempts = self.config.retry_attempts

        for attempt in range(1, attempts + 1):
            try:
                text, usage = self._stream(request)
                logger.debug(f'Bedrock generated {len(text)} chars, usage: {usage}')
                return text.strip()
            except ClientError as e:
                code = e.response.get('Error', {}).get('Code', '')
                if code not in RETRYABLE_CODES or attempt == attempts:
                    logger.error(f'Bedrock generation failed ({code}) on attempt {attempt}: {e}')
                    raise BedrockLLMError(f'Bedrock generation failed: {code or e}') from e
                logger.warning(f'Bedrock throttled ({code}), attempt {attempt}/{attempts}')
            except BotoCoreError as e:
                if attempt == attempts:
                    raise BedrockLLMError(f'Bedrock generation failed after {attempts} attempts: {e}') from e
                logger.warning(f'Bedrock attempt {attempt}/{attempts} failed: {e}')

            time.sleep(self.config.retry_delay * 2**(attempt - 1) + random.uniform(0, 0.5))

        raise BedrockLLMError(f'Bedrock generation failed after {attempts} attempts')

    def health_check(self) -> bool:
        """
        Check that the configured model is available without running inference.

        Returns:
            True if the model or inference profile is active, False otherwise
        """
        try:
            if self.model_id.startswith(INFERENCE_PROFILE_PREFIXES):
                response = self.control.get_inference_profile(inferenceProfileIdentifier=self.model_id)
                return response.get('status', 'ACTIVE') == 'ACTIVE'

            response = self.control.get_foundation_model(modelIdentifier=self.model_id)
            return response.get('modelDetails', {}).get('modelLifecycle', {}).get('status', 'ACTIVE') == 'ACTIVE'

        except (ClientError, BotoCoreError) as e:
            logger.error(f'Bedrock LLM health check failed: {e}')
            return False

    def close(self) -> None:
        """Bedrock clients hold no persistent connections."""
        return None
