from __future__ import annotations

from ragscope.agent.citations import build_sources, extract_numbered_options, link_options
from ragscope.domain.entities import AssembledContext, AssembledItem, RetrievedItem


def _context(*items: RetrievedItem) -> AssembledContext:
    return AssembledContext(
        items=tuple(
            AssembledItem(item=item, citation_index=i, content=item.content, token_estimate=1, truncated=False)
            for i, item in enumerate(items)
        ),
        total_tokens=len(items),
    )


CONTEXT = _context(
    RetrievedItem("emails", "e1", 0.91, "Invoice from Acme for March services", {"subject": "Acme invoice"}),
    RetrievedItem("emails", "e2", 0.72, "Team offsite agenda and travel details", {"subject": "Offsite plan"}),
)


def test_numbered_list_options() -> None:
    answer = "Here is what I found:\n1. Acme invoice: due on the 30th [0]\n2. Offsite plan. Starts Monday\n3. ok"
    options = extract_numbered_options(answer)

    assert [option["number"] for option in options] == [1, 2]
    assert options[0]["text"] == "Acme invoice"
    assert options[0]["full_text"] == "Acme invoice: due on the 30th [0]"
    assert options[1]["text"] == "Offsite plan"
    assert options[0]["action"] == "select_option"
    assert options[0]["value"] == "1"


def test_bold_bullet_and_header_fallbacks() -> None:
    bullets = extract_numbered_options("- **Acme invoice**: due soon\n- **Offsite plan**: Monday")
    assert [option["text"] for option in bullets] == ["Acme invoice", "Offsite plan"]
    assert bullets[0]["full_text"] == "Acme invoice: due soon"

    headers = extract_numbered_options("## First section\ntext\n### Second section\nmore")
    assert [option["text"] for option in headers] == ["First section", "Second section"]


def test_options_capped_at_ten() -> None:
    answer = "\n".join(f"{i}. Option number {i}" for i in range(1, 15))
    assert len(extract_numbered_options(answer)) == 10


def test_link_options_prefers_explicit_reference_then_title_then_content() -> None:
    options = [
        {"number": 1, "text": "Something", "full_text": "Something else [Source 1]"},
        {"number": 2, "text": "Acme invoice", "full_text": "Acme invoice: pay it"},
        {"number": 3, "text": "travel details", "full_text": "travel details"},
        {"number": 4, "text": "Unrelated", "full_text": "Unrelated [7]"},
    ]
    linked = link_options(options, CONTEXT)
    assert [option["citation_index"] for option in linked] == [1, 0, 1, None]


def test_build_sources_use_citation_indices() -> None:
    sources = build_sources(CONTEXT)
    assert [source["index"] for source in sources] == [0, 1]
    assert sources[0]["title"] == "Acme invoice"
    assert sources[0]["relevance"] == 91.0
    assert sources[1]["content_preview"].startswith("Team offsite")
