"""
Form Coach - AI-Powered Exercise Form Check

Sends a single camera frame and the exercise name to a vision-capable chat
model and returns a verdict: is the form correct, and what to correct.

Works with any OpenAI-compatible chat completions endpoint. The endpoint,
model and key come from config (VISION_BASE_URL, VISION_MODEL, VISION_API_KEY).
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from openai import APIConnectionError, APIStatusError, AsyncOpenAI, OpenAIError
from pydantic import BaseModel, Field, ValidationError

import config

logger = logging.getLogger(__name__)


SYSTEM_PROMPT = """You are a personal trainer who checks a client's exercise form.

You will receive one frame from a live camera feed and the name of the exercise being performed.
Judge the form visible in the frame.
- If the form is correct, say so and give one short cue to keep it that way.
- If the form is incorrect, explain in one or two sentences how to correct it.

Respond with a JSON object only, no markdown:
{"formCorrect": <true or false>, "feedback": "<your feedback>"}"""


class RemoteAnalysisError(Exception):
    """The AI service could not produce a verdict for a frame."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


@dataclass(frozen=True)
class Verdict:
    """The AI service's judgement for one analyzed frame."""

    form_correct: bool
    feedback: str

    def to_dict(self) -> Dict[str, Any]:
        return {"formCorrect": self.form_correct, "feedback": self.feedback}


class FormAnalysis(BaseModel):
    """Response schema expected from the model."""

    formCorrect: bool = Field(description="Whether the exercise form is correct.")
    feedback: str = Field(description="Feedback on how to correct the exercise form.")


def is_image_data_uri(value: str) -> bool:
    header, sep, payload = value.partition(",")
    return bool(sep and payload) and header.startswith("data:image/") and header.endswith(";base64")


def parse_verdict(content: Optional[str]) -> Verdict:
    """Validate the model output and turn it into a Verdict."""
    if not content or not content.strip():
        raise RemoteAnalysisError("The AI coach returned an empty response.")

    # Some models wrap JSON in a code fence despite the instructions
    text = content.strip()
    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        text = text[start:end + 1]

    try:
        analysis = FormAnalysis.model_validate_json(text)
    except ValidationError as exc:
        logger.warning("Malformed form analysis from model: %r", content[:200])
        raise RemoteAnalysisError("The AI coach returned a malformed form analysis.") from exc
    return Verdict(form_correct=analysis.formCorrect, feedback=analysis.feedback.strip())


class FormCoach:
    """
    Single-shot form analysis against a hosted vision model.

    Usage:
        coach = FormCoach(api_key="your-key")
        verdict = await coach.analyze("data:image/jpeg;base64,...", "Squat")

    analyze() raises RemoteAnalysisError on any failure. It never retries;
    the caller decides what a failure means.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[AsyncOpenAI] = None,
    ):
        """
        Args:
            api_key: API key. Falls back to VISION_API_KEY / OPENAI_API_KEY.
            base_url: OpenAI-compatible endpoint. Falls back to VISION_BASE_URL.
            model: Vision model name. Falls back to VISION_MODEL.
            timeout: Per-request transport timeout in seconds.
            client: Preconfigured client, used as-is.
        """
        self.api_key = api_key or config.VISION_API_KEY
        self.model = model or config.VISION_MODEL
        self.client = client

        if self.client is None and self.api_key:
            self.client = AsyncOpenAI(
                api_key=self.api_key,
                base_url=base_url or config.VISION_BASE_URL,
                timeout=timeout or config.VISION_TIMEOUT_S,
            )

    @property
    def is_available(self) -> bool:
        """Check if the vision model is configured."""
        return self.client is not None

    async def analyze(self, frame: str, exercise: str) -> Verdict:
        """
        Analyze one frame of the user performing ``exercise``.

        Args:
            frame: Still image as a data URI, 'data:<mimetype>;base64,<data>'
            exercise: Exercise label, e.g. "Squat"
        """
        if not self.is_available:
            raise RemoteAnalysisError(
                "The AI coach is not configured. Set VISION_API_KEY to enable form analysis."
            )
        if not is_image_data_uri(frame):
            raise RemoteAnalysisError("The captured frame is not a base64 image data URI.")

        try:
            completion = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": f"Exercise Type: {exercise}"},
                            {"type": "image_url", "image_url": {"url": frame}},
                        ],
                    },
                ],
                response_format={"type": "json_object"},
                max_tokens=200,
                temperature=0.2,
            )
        except APIStatusError as exc:
            logger.error("Form analysis rejected (%s): %s", exc.status_code, exc.message)
            raise RemoteAnalysisError(
                f"The AI coach rejected the request ({exc.status_code}): {exc.message}"
            ) from exc
        except APIConnectionError as exc:
            logger.error("Form analysis transport error: %s", exc)
            raise RemoteAnalysisError("Could not reach the AI coach. Check your connection.") from exc
        except OpenAIError as exc:
            logger.error("Form analysis error: %s", exc)
            raise RemoteAnalysisError(f"An error occurred during analysis: {exc}") from exc

        content = completion.choices[0].message.content if completion.choices else None
        verdict = parse_verdict(content)
        logger.info("Form analysis for %s: correct=%s", exercise, verdict.form_correct)
        return verdict
