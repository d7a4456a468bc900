"""Unit tests for prompt materialization."""

import pytest

from cellforge.services.generation.types import Example, SourceSnippet
from cellforge.services.prompts import (
    FREE_SYSTEM_ROLE,
    NO_MORE_ITEMS,
    ROW_SYSTEM_ROLE,
    is_exhausted,
    materialize_prompt,
    referenced_names,
    render_instruction,
)

pytestmark = pytest.mark.unit


def test_render_substitutes_placeholders():
    assert render_instruction("Translate {{Text}} to {{ Lang }}", {"Text": "hi", "Lang": "fr"}) == (
        "Translate hi to fr"
    )


def test_unknown_placeholder_renders_empty():
    assert render_instruction("A {{Missing}} B", {}) == "A  B"


def test_referenced_names_in_order_without_duplicates():
    assert referenced_names("{{B}} and {{A}} then {{B}}") == ["B", "A"]


def test_row_prompt_sections():
    prompt = materialize_prompt(
        "Summarize {{Text}}",
        data={"Text": "long article"},
        examples=[Example(output="short", inputs={"Text": "other article"})],
    )

    assert ROW_SYSTEM_ROLE in prompt
    assert "# Examples" in prompt
    assert "### Input\nText: other article\n### Output\nshort" in prompt
    assert "# User Instruction\nSummarize long article" in prompt
    assert prompt.endswith("# Output\n")


def test_free_generation_lists_previous_items():
    prompt = materialize_prompt(
        "Name a planet",
        examples=[Example(output="Mars"), Example(output="Venus")],
    )

    assert FREE_SYSTEM_ROLE in prompt
    assert "# Previous Items\n- Mars\n- Venus" in prompt
    assert NO_MORE_ITEMS in prompt


def test_sources_section_is_numbered():
    prompt = materialize_prompt(
        "Who founded {{Company}}?",
        data={"Company": "Acme"},
        sources=[
            SourceSnippet(url="https://a.example", text="Acme was founded by X.", title="About"),
            SourceSnippet(url="https://b.example", text="More."),
        ],
    )

    assert "# Sources" in prompt
    assert "[1] https://a.example (About)\nAcme was founded by X." in prompt
    assert "[2] https://b.example\nMore." in prompt
    assert prompt.index("# Sources") < prompt.index("# User Instruction")


def test_prompt_is_deterministic():
    args = ("Describe {{Name}}", {"Name": "Ada"})
    assert materialize_prompt(*args) == materialize_prompt(*args)


def test_no_examples_section_when_empty():
    prompt = materialize_prompt("Describe {{Name}}", {"Name": "Ada"}, examples=[])
    assert "# Examples" not in prompt
    assert "# Previous Items" not in prompt


@pytest.mark.parametrize(
    "response,expected",
    [
        ("no more items", True),
        ("No More Items.", True),
        ("There are no more items to list", True),
        ("Jupiter", False),
    ],
)
def test_is_exhausted(response, expected):
    assert is_exhausted(response) is expected
