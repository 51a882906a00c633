# voice/commands.py
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class CommandAction(Enum):
    PAUSE            = "pause"
    RESUME           = "resume"
    SKIP             = "skip"
    PROVIDE_FEEDBACK = "provide_feedback"
    APPROVE          = "approve"
    REJECT           = "reject"
    RATE             = "rate"


@dataclass(frozen=True)
class VoiceCommand:
    action:     CommandAction
    transcript: str = ""
    parameters: dict[str, Any] = field(default_factory=dict)


# El primer patrón que encaja gana: el orden importa
_PATTERNS: list[tuple[CommandAction, re.Pattern]] = [
    (CommandAction.PAUSE,            re.compile(r"\b(pause|pausa[r]?)\s+(the\s+|el\s+)?(workflow|work|process|proceso|trabajo)\b", re.I)),
    (CommandAction.RESUME,           re.compile(r"\b(resume|reanuda[r]?|continua[r]?)\s+(the\s+|el\s+)?(workflow|work|process|proceso|trabajo)\b", re.I)),
    (CommandAction.SKIP,             re.compile(r"\b(skip|salta[r]?)\s+(this|chapter|este|cap[ií]tulo)\b", re.I)),
    (CommandAction.PROVIDE_FEEDBACK, re.compile(r"\b(feedback|review|comment|comentario)\b", re.I)),
    (CommandAction.APPROVE,          re.compile(r"\b(approve|accept|good|aprobar|apruebo|acepto)\b", re.I)),
    (CommandAction.REJECT,           re.compile(r"\b(reject|deny|bad|rechazar|rechazo)\b", re.I)),
    (CommandAction.RATE,             re.compile(r"\b(rate|score|rating|puntuar|nota)\b", re.I)),
]

_RATING_RES = [
    re.compile(r"\b(?:rate|score|rating|puntuar|nota)\s+(\d+(?:\.\d+)?)", re.I),
    re.compile(r"\b(\d+(?:\.\d+)?)\s+(?:out\s+of|de)\s+\d+", re.I),
]
_FEEDBACK_RE = re.compile(r"\b(?:feedback|review|comment|comentario)[:,]?\s+(.+)", re.I | re.S)
_REASON_RE   = re.compile(r"\b(?:because|porque)\s+(.+)", re.I | re.S)


def parse_transcript(transcript: str) -> Optional[VoiceCommand]:
    """
    Traduce una transcripción de voz a un comando del workflow.
    None si ninguna acción encaja.
    """
    text = transcript.strip()
    for action, pattern in _PATTERNS:
        if pattern.search(text):
            return VoiceCommand(action=action, transcript=text, parameters=_parameters(action, text))
    return None


def _parameters(action: CommandAction, text: str) -> dict[str, Any]:
    params: dict[str, Any] = {}

    if action in (CommandAction.RATE, CommandAction.PROVIDE_FEEDBACK):
        rating = _extract_rating(text)
        if rating is not None:
            params["rating"] = rating

    if action is CommandAction.PROVIDE_FEEDBACK:
        match = _FEEDBACK_RE.search(text)
        params["feedback_content"] = match.group(1).strip() if match else text

    if action is CommandAction.SKIP:
        match = _REASON_RE.search(text)
        if match:
            params["reason"] = match.group(1).strip()

    return params


def _extract_rating(text: str) -> Optional[float]:
    for pattern in _RATING_RES:
        match = pattern.search(text)
        if match:
            return float(match.group(1))
    return None
