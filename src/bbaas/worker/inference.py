"""Client for the vision language model endpoint (Ollama ``/api/generate`` contract)."""

from typing import Any

import httpx

from ..config import InferenceConfig
from ..log_config import get_logger

log = get_logger("inference", service="sandbox")


class InferenceError(Exception):
    """Raised when a generate call fails for any reason."""

    def __init__(self, message: str, unreachable: bool = False):
        super().__init__(message)
        self.unreachable = unreachable


class InferenceClient:
    """Synchronous request/response calls: one prompt plus images in, one text out."""

    HTTP_CONNECT_TIMEOUT = 10.0

    def __init__(self, config: InferenceConfig, http_client: httpx.AsyncClient | None = None):
        self.config = config
        self.http_client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(config.timeout_seconds, connect=self.HTTP_CONNECT_TIMEOUT)
        )

    def build_request_body(
        self,
        prompt: str,
        images: list[str] | None = None,
        options: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": self.config.model,
            "prompt": prompt,
            "images": [image for image in images or [] if image],
            "stream": False,
        }
        if options:
            body["options"] = options
        return body

    async def generate(
        self,
        prompt: str,
        images: list[str] | None = None,
        options: dict[str, Any] | None = None,
    ) -> str:
        """
        Run one generation and return the model's text.

        Raises:
            InferenceError: Transport failure, non-200 status, undecodable body,
                or a body without a string ``response`` field.
        """
        body = self.build_request_body(prompt, images, options)

        try:
            resp = await self.http_client.post(self.config.endpoint, json=body)
        except (httpx.ConnectError, httpx.ConnectTimeout) as e:
            raise InferenceError(f"could not contact model endpoint: {e}", unreachable=True) from e
        except httpx.HTTPError as e:
            raise InferenceError(f"model request failed: {e}") from e

        if resp.status_code != 200:
            raise InferenceError(
                f"model endpoint returned status {resp.status_code}: {resp.text[:500]}"
            )

        try:
            data = resp.json()
        except ValueError as e:
            raise InferenceError(f"could not decode model response: {e}") from e

        text = data.get("response") if isinstance(data, dict) else None
        if not isinstance(text, str):
            raise InferenceError("model response missing 'response' field")

        log.debug(
            "inference.complete",
            model=self.config.model,
            response_chars=len(text),
            eval_count=data.get("eval_count"),
        )
        return text

    async def aclose(self) -> None:
        await self.http_client.aclose()
