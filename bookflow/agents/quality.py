# agents/quality.py
import re
from collections import Counter
from typing import Iterable

from bookflow.models import HumanFeedback

_TOKEN_RE    = re.compile(r"\w+")
_SENTENCE_RE = re.compile(r"[.!?]+")

_NEUTRAL_FEEDBACK = 5.0


def assess_content_quality(original: str, generated: str) -> float:
    """
    Heurística de calidad 0-100 de un texto generado frente a su entrada.

    Parte de 50 y ajusta por:
      - ratio de palabras salida/entrada: +20 en [0.8, 1.5], −20 fuera de [0.5, 2.0]
      - crecimiento de vocabulario > 10 %: +15
      - longitud media de frase en [10, 25] palabras: +10
      - −5 por cada palabra que supera el 5 % de todos los tokens
    """
    quality = 50.0

    original_words  = len(original.split())
    generated_words = len(generated.split())
    if original_words:
        ratio = generated_words / original_words
        if 0.8 <= ratio <= 1.5:
            quality += 20
        elif ratio < 0.5 or ratio > 2.0:
            quality -= 20

    original_tokens  = _tokens(original)
    generated_tokens = _tokens(generated)

    original_vocab = set(original_tokens)
    if original_vocab:
        growth = (len(set(generated_tokens)) - len(original_vocab)) / len(original_vocab)
        if growth > 0.1:
            quality += 15

    sentences = [s for s in _SENTENCE_RE.split(generated) if s.strip()]
    if sentences:
        mean_length = sum(len(s.split()) for s in sentences) / len(sentences)
        if 10 <= mean_length <= 25:
            quality += 10

    if generated_tokens:
        limit = len(generated_tokens) * 0.05
        repetitive = sum(1 for count in Counter(generated_tokens).values() if count > limit)
        quality -= repetitive * 5

    return max(0.0, min(100.0, quality))


def feedback_score(feedback: Iterable[HumanFeedback]) -> float:
    """Media de ratings humanos (0-10); 5 neutral si no hay ninguno."""
    ratings = [f.rating for f in feedback]
    if not ratings:
        return _NEUTRAL_FEEDBACK
    return sum(ratings) / len(ratings)


def _tokens(text: str) -> list[str]:
    return _TOKEN_RE.findall(text.lower())
