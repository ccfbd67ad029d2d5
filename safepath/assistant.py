"""First-aid guidance generated by Gemini over its REST API."""

import json
import logging
import re
from functools import lru_cache

import httpx

from .core import get_settings

logger = logging.getLogger(__name__)

GEMINI_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"

PROMPT = """Given the following emergency situation: "{description}"

Please provide a structured response with:
1. First aid steps (numbered list)
2. Safety tips (bullet points)
3. What to do before emergency services arrive (bullet points)

Format the response as a JSON object with these keys:
{{
  "firstAidSteps": ["step1", "step2", ...],
  "safetyTips": ["tip1", "tip2", ...],
  "beforeHelpArrives": ["action1", "action2", ...]
}}

Keep each step/tip/action concise and clear. Focus on immediate actions that can be taken safely."""

RESPONSE_KEYS = {
    "firstAidSteps": "first_aid_steps",
    "safetyTips": "safety_tips",
    "beforeHelpArrives": "before_help_arrives",
}

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$")


class AssistantError(Exception):
    """Raised when guidance cannot be produced."""


def parse_guidance(text: str) -> dict:
    """
    Parse model output into the three guidance lists.

    Markdown code fences around the JSON object are tolerated.

    Raises:
        AssistantError: If the text is not a JSON object with all
            three keys holding lists.
    """
    cleaned = _FENCE.sub("", text.strip())
    try:
        data = json.loads(cleaned)
    except ValueError as exc:
        raise AssistantError("Invalid AI response format") from exc
    if not isinstance(data, dict):
        raise AssistantError("Invalid AI response format")

    guidance = {}
    for key, name in RESPONSE_KEYS.items():
        value = data.get(key)
        if not isinstance(value, list):
            raise AssistantError("Invalid AI response structure")
        guidance[name] = [str(item) for item in value]
    return guidance


class FirstAidAssistant:
    """Asks Gemini for first-aid steps for a described emergency."""

    def __init__(
        self,
        api_key: str | None,
        model: str = "gemini-1.5-flash",
        timeout: float = 8.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.transport = transport

    async def guidance(self, description: str) -> dict:
        """
        Request structured guidance for an emergency description.

        Args:
            description (str): What is happening, in the user's words.

        Raises:
            AssistantError: If the key is missing, the request fails or
                the answer cannot be parsed.

        Returns:
            dict: ``first_aid_steps``, ``safety_tips`` and
            ``before_help_arrives`` lists.
        """
        if not self.api_key:
            raise AssistantError("Gemini API key is not configured")

        body = {"contents": [{"parts": [{"text": PROMPT.format(description=description)}]}]}
        logger.info("Sending prompt to Gemini")
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self.transport
            ) as client:
                response = await client.post(
                    GEMINI_URL.format(model=self.model),
                    params={"key": self.api_key},
                    json=body,
                )
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise AssistantError(str(exc)) from exc

        try:
            text = data["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError) as exc:
            raise AssistantError("Empty AI response") from exc
        return parse_guidance(text)


@lru_cache()
def get_assistant() -> FirstAidAssistant:
    settings = get_settings()
    return FirstAidAssistant(
        settings.GEMINI_API_KEY, settings.GEMINI_MODEL, settings.HTTP_TIMEOUT_SECONDS
    )
