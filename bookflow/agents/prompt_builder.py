# agents/prompt_builder.py
from typing import Iterable

from bookflow.models import AgentRole, HumanFeedback


_SYSTEM_PROMPTS: dict[AgentRole, str] = {
    AgentRole.WRITER: (
        "Eres un escritor creativo especializado en reescribir y enriquecer historias. "
        "Haz el contenido más atractivo, vívido y convincente manteniendo el sentido "
        "original y la estructura de la historia."
    ),
    AgentRole.REVIEWER: (
        "Eres un revisor de contenido profesional. Das feedback constructivo, "
        "identificas mejoras y cuidas la calidad y la coherencia."
    ),
    AgentRole.EDITOR: (
        "Eres un editor profesional. Te centras en gramática, estilo, ritmo y claridad. "
        "Haces mejoras concretas para facilitar la lectura."
    ),
}

_INSTRUCTIONS: dict[AgentRole, str] = {
    AgentRole.WRITER: (
        "Reescribe el siguiente contenido de forma creativa y atractiva, manteniendo "
        "la historia y el significado. Hazlo más vívido y convincente:"
    ),
    AgentRole.REVIEWER: (
        "Revisa el siguiente contenido y aporta feedback constructivo, sugerencias "
        "de mejora y cualquier problema que detectes:"
    ),
    AgentRole.EDITOR: (
        "Edita el siguiente contenido cuidando gramática, estilo, ritmo y calidad "
        "general. Haz mejoras concretas:"
    ),
}


def system_prompt_for(role: AgentRole) -> str:
    return _SYSTEM_PROMPTS[role]


def build_user_prompt(
    role:        AgentRole,
    content:     str,
    feedback:    Iterable[HumanFeedback] = (),
    instruction: str = "",
) -> str:
    """
    Instrucción del rol + contenido + bloque de feedback humano previo.
    El feedback se anexa tal cual (comentario y sugerencias) al final.
    """
    prompt = f"{instruction or _INSTRUCTIONS[role]}\n\n{content}"
    block  = render_feedback_block(feedback)
    if block:
        prompt += "\n\n" + block
    return prompt


def render_feedback_block(feedback: Iterable[HumanFeedback]) -> str:
    lines = []
    for item in feedback:
        lines.append(f"- {item.comment}")
        if item.suggestions:
            lines.append(f"  Sugerencias: {', '.join(item.suggestions)}")
    if not lines:
        return ""
    return "Feedback humano previo a tener en cuenta:\n" + "\n".join(lines)
