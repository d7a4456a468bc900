"""
Prompt Materializer
===================

Turns a column's instruction template, one row's data, optional web-search
sources and few-shot examples into the final prompt string sent to a model.

Placeholders use ``{{Column Name}}``. Unknown placeholders render as empty
strings, like a logic-less template engine.

Two prompt shapes exist:
- row-conditioned: the instruction references other columns, so each row's
  values drive the output;
- free generation: no column references, every row asks for one more item
  and the model answers ``no more items`` once it has nothing new to add.
"""

import re

from cellforge.services.generation.types import Example, SourceSnippet

PLACEHOLDER_RE = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")

NO_MORE_ITEMS = "no more items"

ROW_SYSTEM_ROLE = (
    "You are a rigorous, precise data-generation engine. Follow the user "
    "instruction exactly and respond only with the requested value: no "
    "explanations, no preamble, no surrounding quotes."
)

FREE_SYSTEM_ROLE = (
    "You are a rigorous, precise data-generation engine. Each request asks "
    "for exactly one new item that satisfies the user instruction. Respond "
    "only with that item. Never repeat an item listed under previous items. "
    f'If no new item can be produced, respond exactly with "{NO_MORE_ITEMS}".'
)


def render_instruction(instruction: str, data: dict[str, str] | None = None) -> str:
    """Substitute ``{{name}}`` placeholders with values from ``data``."""
    data = data or {}

    def _replace(match: re.Match) -> str:
        value = data.get(match.group(1))
        return "" if value is None else str(value)

    return PLACEHOLDER_RE.sub(_replace, instruction)


def referenced_names(instruction: str) -> list[str]:
    """Placeholder names in order of first appearance."""
    names: list[str] = []
    for match in PLACEHOLDER_RE.finditer(instruction):
        if match.group(1) not in names:
            names.append(match.group(1))
    return names


def _format_sources(sources: list[SourceSnippet]) -> str:
    lines = []
    for i, source in enumerate(sources, start=1):
        title = f" ({source.title})" if source.title else ""
        lines.append(f"[{i}] {source.url}{title}\n{source.text.strip()}")
    return "\n\n".join(lines)


def _format_row_examples(examples: list[Example]) -> str:
    blocks = []
    for example in examples:
        inputs = "\n".join(f"{k}: {v}" for k, v in example.inputs.items())
        blocks.append(f"## Example\n### Input\n{inputs}\n### Output\n{example.output}")
    return "\n\n".join(blocks)


def materialize_prompt(
    instruction: str,
    data: dict[str, str] | None = None,
    sources: list[SourceSnippet] | None = None,
    examples: list[Example] | None = None,
) -> str:
    """
    Build the final prompt for one row.

    Args:
        instruction: Template with ``{{Column Name}}`` placeholders
        data: Row values keyed by referenced column name
        sources: Web-search snippets to ground the answer
        examples: Few-shot examples (validated or previously generated values)

    Returns:
        Prompt string, deterministic for identical inputs
    """
    rendered = render_instruction(instruction, data).strip()
    sections: list[str] = []

    if data:
        sections.append(f"# System Role\n{ROW_SYSTEM_ROLE}")
        if examples:
            sections.append(f"# Examples\n{_format_row_examples(examples)}")
    else:
        sections.append(f"# System Role\n{FREE_SYSTEM_ROLE}")
        if examples:
            previous = "\n".join(f"- {e.output}" for e in examples)
            sections.append(f"# Previous Items\n{previous}")

    if sources:
        sections.append(
            "# Sources\nUse the following sources to answer. Prefer them over "
            f"prior knowledge.\n\n{_format_sources(sources)}"
        )

    sections.append(f"# User Instruction\n{rendered}")
    sections.append("# Output")
    return "\n\n".join(sections) + "\n"


def is_exhausted(response: str) -> bool:
    """True when the model signalled it has no more items."""
    return NO_MORE_ITEMS in response.lower()
