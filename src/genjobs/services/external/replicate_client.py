"""Replicate API client for prompt enhancement with error classification."""

import asyncio
from typing import Any, Sequence

import replicate
from replicate.exceptions import ReplicateError as ReplicateAPIError

from genjobs.services.exceptions import PermanentExternalError, TransientExternalError
from genjobs.services.external.client import classify_error


class PromptEnhancer:
    """Turns a user's edit instruction into a detailed English prompt via an LLM on Replicate."""

    def __init__(self, api_token: str, model: str = "google/gemini-2.5-flash"):
        """Initialize enhancer.

        Args:
            api_token: Replicate API authentication token
            model: Model identifier (default: "google/gemini-2.5-flash")
        """
        self.api_token = api_token
        self.model = model

    async def enhance(self, instruction: str, image_urls: Sequence[str] = ()) -> str:
        """Run the language model once and return its text output.

        Args:
            instruction: Full instruction sent to the model
            image_urls: Images the model should look at

        Returns:
            Enhanced prompt text (stripped)

        Raises:
            TransientExternalError: Timeouts, rate limits, empty output
            PermanentExternalError: Missing token, auth failures, malformed output
        """
        if not self.api_token:
            raise PermanentExternalError("REPLICATE_API_TOKEN not configured")

        model_input = {
            "prompt": instruction,
            "images": list(image_urls),
            "videos": [],
            "top_p": 0.95,
            "temperature": 1,
            "dynamic_thinking": False,
            "max_output_tokens": 65535,
        }

        try:
            # SDK is synchronous (streamed output polls with blocking sleeps); run in thread pool
            text = await asyncio.to_thread(self._run_replicate, model_input)

        except ReplicateAPIError as e:
            raise classify_error(e) from e

        except (ConnectionError, OSError, TimeoutError) as e:
            raise classify_error(e) from e

        if not text:
            raise TransientExternalError("Prompt enhancement returned an empty response")
        return text

    def _run_replicate(self, model_input: dict) -> str:
        """Run the model and drain its output (blocking)."""
        client = replicate.Client(api_token=self.api_token)
        output = client.run(self.model, input=model_input)
        return _output_text(output)


def _output_text(output: Any) -> str:
    """Flatten model output (string or streamed chunks) into text."""
    if isinstance(output, str):
        return output.strip()
    if isinstance(output, (list, tuple)) or hasattr(output, "__iter__"):
        return "".join(str(chunk) for chunk in output).strip()
    raise PermanentExternalError(f"Unexpected output format from Replicate: {type(output)}")
