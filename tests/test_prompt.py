from __future__ import annotations

from kb_chat.llm import render_instruct, to_messages
from kb_chat.retrieval import SYSTEM_INSTRUCTIONS, Prompt, PromptAssembler
from kb_chat.types import Role, Snippet, Turn


def test_no_context_leaves_query_verbatim():
    p = PromptAssembler().build("What is 2 + 2?", [])
    assert p.user == "What is 2 + 2?"
    assert "Knowledge base content" not in p.user
    assert p.system == SYSTEM_INSTRUCTIONS


def test_context_is_prefixed_in_rank_order():
    snippets = [Snippet("Refunds take 5 days.", 0.9), Snippet("Refunds need a receipt.", 0.7)]
    p = PromptAssembler().build("How do refunds work?", snippets)
    assert p.user == (
        "Knowledge base content:\n"
        "Refunds take 5 days.\n\nRefunds need a receipt.\n\n"
        "How do refunds work?"
    )


def test_blank_snippets_count_as_no_context():
    p = PromptAssembler().build("hi", [Snippet("   ", 0.1)])
    assert p.user == "hi"


def test_policy_mentions_general_knowledge_fallback():
    assert "general knowledge" in SYSTEM_INSTRUCTIONS
    assert "knowledge base" in SYSTEM_INSTRUCTIONS


def test_messages_include_history_and_skip_tool_turns():
    history = [
        Turn.system("c", "Be brief."),
        Turn.user("c", "hi"),
        Turn("c", Role.TOOL, ""),
        Turn.assistant("c", "hello"),
    ]
    msgs = Prompt(system="SYS", user="next", history=history).to_messages()
    assert [m["role"] for m in msgs] == ["system", "system", "user", "assistant", "user"]
    assert msgs[-1]["content"] == "next"


def test_system_override_replaces_policy():
    msgs = Prompt(system="SYS", user="q").to_messages("Other")
    assert msgs[0] == {"role": "system", "content": "Other"}


def test_plain_string_prompt_and_instruct_rendering():
    msgs = to_messages("Summarise this", "Be short")
    assert msgs == [{"role": "system", "content": "Be short"}, {"role": "user", "content": "Summarise this"}]
    text = render_instruct(msgs)
    assert text.startswith("### System\nBe short")
    assert "### User\nSummarise this" in text
    assert text.rstrip().endswith("### Assistant")
