from typing import Callable, Optional

from ..config import AgentConfig, PromptConfig

PromptBuilder = Callable[[int, Optional[str]], str]


class PromptBuildError(Exception):
    """The iteration prompt could not be produced; the run cannot continue."""


def build_prompt(
    prompt_config: PromptConfig,
    agent_config: AgentConfig,
    *,
    iteration: int,
    prev_output: Optional[str],
) -> str:
    if prompt_config.text:
        template = prompt_config.text
    elif prompt_config.file is not None:
        try:
            template = prompt_config.file.read_text(encoding="utf-8")
        except OSError as exc:
            raise PromptBuildError(
                f"Unable to read prompt file {prompt_config.file}: {exc}"
            ) from exc
    else:
        raise PromptBuildError("No prompt text or prompt file configured")
    if not template.strip():
        raise PromptBuildError("Prompt is empty")

    prev_section = ""
    max_chars = prompt_config.carry_output_chars
    if prev_output and max_chars > 0:
        prev_section = (
            "<PREV_RUN_OUTPUT>\n" + prev_output[-max_chars:] + "\n</PREV_RUN_OUTPUT>"
        )

    replacements = {
        "{{ITERATION}}": str(iteration),
        "{{COMPLETION_MARKER}}": agent_config.completion_marker,
        "{{PREV_RUN_OUTPUT}}": prev_section,
    }
    has_prev_marker = "{{PREV_RUN_OUTPUT}}" in template
    for marker, value in replacements.items():
        template = template.replace(marker, value)
    if prev_section and not has_prev_marker:
        template = template.rstrip("\n") + "\n\n" + prev_section + "\n"
    return template


def prompt_builder(
    prompt_config: PromptConfig, agent_config: AgentConfig
) -> PromptBuilder:
    def _build(iteration: int, prev_output: Optional[str]) -> str:
        return build_prompt(
            prompt_config, agent_config, iteration=iteration, prev_output=prev_output
        )

    return _build
