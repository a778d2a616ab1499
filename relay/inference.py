import base64
from typing import Any, Dict, List, Optional, Union

import httpx

from .errors import InferenceError
from .utils import json_log


OPENROUTER_API_URL = "https://openrouter.ai/api/v1/chat/completions"

DEFAULT_MODEL = "deepseek/deepseek-r1:free"
TEMPERATURE = 0.7
TOP_P = 1
REPETITION_PENALTY = 1

# Attribution headers OpenRouter shows on its leaderboard
REFERER = "https://github.com/whatsapp-bot"
APP_TITLE = "WhatsApp AI Bot"

DEFAULT_IMAGE_PROMPT = "What do you see in this image? Please describe it in detail."

# Service name in error messages, per request kind
SERVICE_NAMES = {"text": "OpenRouter", "image": "OpenRouter Vision"}


def build_context_prompt(prompt: str, context: Optional[str]) -> str:
    if not context:
        return prompt
    return (
        f"Context from PDF:\n{context}\n\n"
        f"Question: {prompt}\n"
        "Please answer based on the context provided."
    )


class OpenRouterClient:
    """
    Chat-completions client for text and vision requests.

    Model and sampling parameters are fixed per process; callers only supply
    the prompt (and optional document context) or the image with its caption.
    """

    def __init__(
        self,
        api_key: str,
        model: Optional[str] = None,
        api_url: str = OPENROUTER_API_URL,
        timeout: float = 120.0,
        http_client: Optional[httpx.Client] = None,
    ):
        self.api_key = api_key
        self.model = model or DEFAULT_MODEL
        self.api_url = api_url
        self._http = http_client or httpx.Client(timeout=timeout)

    def close(self):
        self._http.close()

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "HTTP-Referer": REFERER,
            "X-Title": APP_TITLE,
            "Content-Type": "application/json",
        }

    def _body(self, content: Union[str, List[Dict[str, Any]]]) -> Dict[str, Any]:
        return {
            "model": self.model,
            "messages": [{"role": "user", "content": content}],
            "temperature": TEMPERATURE,
            "top_p": TOP_P,
            "repetition_penalty": REPETITION_PENALTY,
        }

    def complete_text(self, prompt: str, context: Optional[str] = None) -> str:
        return self._complete(build_context_prompt(prompt, context), kind="text")

    def complete_image(
        self,
        image: Union[bytes, str],
        caption: Optional[str] = None,
        mime_type: str = "image/jpeg",
    ) -> str:
        b64 = image if isinstance(image, str) else base64.b64encode(image).decode("ascii")
        content = [
            {"type": "text", "text": caption or DEFAULT_IMAGE_PROMPT},
            {"type": "image_url", "image_url": {"url": f"data:{mime_type};base64,{b64}"}},
        ]
        return self._complete(content, kind="image")

    def _complete(self, content: Union[str, List[Dict[str, Any]]], kind: str) -> str:
        service = SERVICE_NAMES.get(kind, "OpenRouter")
        try:
            resp = self._http.post(self.api_url, headers=self._headers(), json=self._body(content))
        except httpx.HTTPError as e:
            json_log("openrouter_transport_error", kind=kind, error=str(e))
            raise InferenceError(f"{service} request failed: {e}") from e

        if not resp.is_success:
            body = resp.text
            json_log("openrouter_api_error", kind=kind, status=resp.status_code, body=body[:500])
            raise InferenceError(
                f"{service} API responded with status {resp.status_code}",
                status_code=resp.status_code,
                body=body,
            )

        try:
            data = resp.json()
        except ValueError as e:
            json_log("openrouter_invalid_json", kind=kind, body=resp.text[:500])
            raise InferenceError(f"Invalid response from {service} API") from e

        text = _extract_content(data)
        if text is None:
            json_log("openrouter_invalid_shape", kind=kind, body=resp.text[:500])
            raise InferenceError(f"Invalid response from {service} API")
        return text


def _extract_content(data: Any) -> Optional[str]:
    """choices[0].message.content, or None when the shape is off."""
    if not isinstance(data, dict):
        return None
    choices = data.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return None
    message = choices[0].get("message")
    if not isinstance(message, dict):
        return None
    content = message.get("content")
    return content if isinstance(content, str) else None
