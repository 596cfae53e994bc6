import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import google.genai as genai
from google.genai import types

from . import config

logger = logging.getLogger(__name__)

_client: Optional[genai.Client] = None

SAFETY_SETTINGS = [
    types.SafetySetting(category="HARM_CATEGORY_HATE_SPEECH", threshold="BLOCK_MEDIUM_AND_ABOVE"),
    types.SafetySetting(category="HARM_CATEGORY_DANGEROUS_CONTENT", threshold="BLOCK_MEDIUM_AND_ABOVE"),
    types.SafetySetting(category="HARM_CATEGORY_SEXUALLY_EXPLICIT", threshold="BLOCK_MEDIUM_AND_ABOVE"),
    types.SafetySetting(category="HARM_CATEGORY_HARASSMENT", threshold="BLOCK_MEDIUM_AND_ABOVE"),
]


class AIUnavailableError(RuntimeError):
    """Raised when no Gemini credentials are configured."""


def get_client() -> genai.Client:
    global _client
    if _client is None:
        if not config.gemini_configured():
            raise AIUnavailableError("AI service not configured. Set GEMINI_API_KEY or GCP_PROJECT_ID.")
        if config.GEMINI_API_KEY:
            _client = genai.Client(api_key=config.GEMINI_API_KEY)
        else:
            _client = genai.Client(http_options=types.HttpOptions(api_version="v1"))
    return _client


def _user_content(prompt: str, images: Sequence[Tuple[bytes, str]] = ()) -> types.Content:
    parts = [types.Part.from_text(text=prompt)]
    for data, mime_type in images:
        parts.append(types.Part.from_bytes(data=data, mime_type=mime_type))
    return types.Content(role="user", parts=parts)


def history_contents(history: Iterable[Dict[str, Any]]) -> List[types.Content]:
    """Convert ``[{"role": "user"|"assistant"|"model", "content": str}]`` into SDK contents."""
    contents: List[types.Content] = []
    for item in history:
        text = str(item.get("content") or "").strip()
        if not text:
            continue
        role = "user" if item.get("role") == "user" else "model"
        contents.append(types.Content(role=role, parts=[types.Part.from_text(text=text)]))
    return contents


def generate_text(
    prompt: str,
    *,
    model: Optional[str] = None,
    system_instruction: Optional[str] = None,
    history: Iterable[Dict[str, Any]] = (),
    images: Sequence[Tuple[bytes, str]] = (),
    temperature: float = 0.7,
    max_output_tokens: int = 1024,
    json_output: bool = False,
) -> str:
    contents = history_contents(history)
    contents.append(_user_content(prompt, images))
    response = get_client().models.generate_content(
        model=model or config.MODEL_NAME,
        contents=contents,
        config=types.GenerateContentConfig(
            automatic_function_calling=types.AutomaticFunctionCallingConfig(disable=True),
            system_instruction=system_instruction,
            temperature=temperature,
            top_p=0.9,
            max_output_tokens=max_output_tokens,
            response_mime_type="application/json" if json_output else None,
            safety_settings=SAFETY_SETTINGS,
        ),
    )
    return getattr(response, "text", None) or ""


def _text_and_first_image_from_stream(stream) -> Tuple[str, Optional[bytes]]:
    texts = []
    img_bytes = None
    for chunk in stream:
        if getattr(chunk, "text", None):
            texts.append(chunk.text)
        if getattr(chunk, "candidates", None):
            for part in getattr(chunk.candidates[0].content, "parts", None) or []:
                inline = getattr(part, "inline_data", None)
                if inline and getattr(inline, "data", None) and img_bytes is None:
                    img_bytes = inline.data
    return "".join(texts), img_bytes


def generate_image(prompt: str, model: Optional[str] = None) -> Tuple[str, Optional[bytes]]:
    stream = get_client().models.generate_content_stream(
        model=model or config.IMAGE_MODEL,
        contents=[_user_content(prompt)],
        config=types.GenerateContentConfig(
            temperature=1,
            top_p=0.95,
            max_output_tokens=32768,
            response_modalities=["TEXT", "IMAGE"],
            safety_settings=SAFETY_SETTINGS,
        ),
    )
    return _text_and_first_image_from_stream(stream)
