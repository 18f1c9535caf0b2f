"""Tests for the agent loop."""

from __future__ import annotations

import base64
import json
from dataclasses import replace
from pathlib import Path
from unittest.mock import patch

import pytest

from deskmate.core.agent import (
    ESCALATION_SENTINEL,
    ITERATION_LIMIT_MESSAGE,
    Agent,
    AgentMode,
    AgentState,
    AgentStep,
    StepType,
    clean_title,
    extract_attachment_text,
    fallback_title,
)
from deskmate.core.conversations import Attachment
from deskmate.core.errors import ModelInvocationError
from deskmate.knowledge.schema import KnowledgeLayer


def tool_json(tool: str, args: dict | None = None, thinking: str = "") -> str:
    prefix = f"<thinking>{thinking}</thinking>\n" if thinking else ""
    return f"{prefix}```json\n{json.dumps({'tool': tool, 'args': args or {}})}\n```"


@pytest.fixture
def make_agent(settings, knowledge, conversations, scripted_model):
    def factory(responses, **overrides):
        model = responses if not isinstance(responses, list) else scripted_model(responses)
        agent_settings = replace(settings, **overrides) if overrides else settings
        return Agent(agent_settings, knowledge, conversations, model=model)
    return factory


def last_user_content(call: list[dict]) -> object:
    return call[-1]["content"]


class TestFinalAnswer:
    @pytest.mark.asyncio
    async def test_plain_text_answer(self, make_agent, conversations):
        agent = make_agent(["Paris is the capital of France."])
        conv = conversations.create()
        result = await agent.run(conv.id, "Capital of France?")
        assert result.text == "Paris is the capital of France."
        assert result.state is AgentState.FINAL_ANSWER
        assert result.iterations == 1
        assert [m.role for m in conversations.get(conv.id).messages] == ["user", "assistant"]

    @pytest.mark.asyncio
    async def test_system_prompt_lists_tools(self, make_agent, conversations):
        agent = make_agent(["ok"])
        conv = conversations.create()
        await agent.run(conv.id, "hi")
        system = agent.model.calls[0][0]
        assert system["role"] == "system"
        assert "search_knowledge_base" in system["content"]
        assert "AI Assistant" in system["content"]

    @pytest.mark.asyncio
    async def test_malformed_json_returned_raw(self, make_agent, conversations):
        raw = '```json\n{"tool": "read_file", "args": {path}}\n```'
        agent = make_agent([raw])
        conv = conversations.create()
        result = await agent.run(conv.id, "read it")
        assert result.text == raw
        assert result.iterations == 1

    @pytest.mark.asyncio
    async def test_pseudo_tool_is_final_answer(self, make_agent, conversations):
        agent = make_agent([tool_json("respond", {"response": "All done."})])
        conv = conversations.create()
        result = await agent.run(conv.id, "finish")
        assert result.text == "All done."
        assert result.state is AgentState.FINAL_ANSWER

    @pytest.mark.asyncio
    async def test_unknown_tool_returned_raw(self, make_agent, conversations):
        raw = tool_json("format_disk", {"drive": "C"})
        agent = make_agent([raw])
        conv = conversations.create()
        result = await agent.run(conv.id, "clean up")
        assert result.text == raw
        assert result.iterations == 1

    @pytest.mark.asyncio
    async def test_model_error_propagates(self, make_agent, conversations, failing_model):
        agent = make_agent(failing_model)
        conv = conversations.create()
        with pytest.raises(ModelInvocationError):
            await agent.run(conv.id, "hello")
        # The user's message was stored before the model failed
        assert [m.role for m in conversations.get(conv.id).messages] == ["user"]


class TestToolLoop:
    @pytest.mark.asyncio
    async def test_tool_output_fed_back(self, make_agent, conversations, knowledge):
        knowledge.ingest("Name: John Doe\nEmail: john@example.com", {"source": "resume.txt"})
        agent = make_agent([
            tool_json("search_knowledge_base", {"query": "email"}),
            "Your email is john@example.com.",
        ])
        conv = conversations.create()
        result = await agent.run(conv.id, "Find the contact details")
        assert result.text == "Your email is john@example.com."
        assert result.iterations == 2
        observation = last_user_content(agent.model.calls[1])
        assert observation.startswith("Tool 'search_knowledge_base' output:\n[Document 1: resume.txt]")

    @pytest.mark.asyncio
    async def test_iteration_limit(self, make_agent, conversations):
        agent = make_agent([tool_json("create_plan", {"steps": ["again"]})])
        conv = conversations.create()
        result = await agent.run(conv.id, "loop forever")
        assert result.text == ITERATION_LIMIT_MESSAGE
        assert result.state is AgentState.ITERATION_LIMIT_EXCEEDED
        assert result.iterations == 15
        assert conversations.get(conv.id).messages[-1].content == ITERATION_LIMIT_MESSAGE

    @pytest.mark.asyncio
    async def test_custom_iteration_limit(self, make_agent, conversations):
        agent = make_agent([tool_json("create_plan", {"steps": ["again"]})], max_iterations=3)
        conv = conversations.create()
        result = await agent.run(conv.id, "loop")
        assert result.iterations == 3

    @pytest.mark.asyncio
    async def test_validation_error_becomes_observation(self, make_agent, conversations):
        agent = make_agent([tool_json("read_file", {}), "Which file?"])
        conv = conversations.create()
        result = await agent.run(conv.id, "read my file")
        assert result.text == "Which file?"
        observation = last_user_content(agent.model.calls[1])
        assert observation.startswith("Tool 'read_file' output:\nError: read_file: invalid arguments")

    @pytest.mark.asyncio
    async def test_steps_emitted(self, make_agent, conversations):
        agent = make_agent([
            tool_json("create_plan", {"steps": ["look", "answer"]}, thinking="Two steps needed"),
            tool_json("mark_step_completed", {"step_index": 0}),
            "Done.",
        ])
        conv = conversations.create()
        steps: list[AgentStep] = []
        await agent.run(conv.id, "plan it", on_step=steps.append)

        types = [s.type for s in steps]
        assert types[0] is StepType.THINKING
        assert steps[0].content == "Analyzing request..."
        assert StepType.PLAN in types
        assert StepType.PLAN_UPDATE in types
        assert any(s.type is StepType.THINKING and s.content == "Two steps needed" for s in steps)
        plan = next(s for s in steps if s.type is StepType.PLAN)
        assert plan.data["steps"] == ["look", "answer"]
        observations = [s for s in steps if s.type is StepType.OBSERVATION]
        assert observations[0].content == "Plan created with 2 steps. Execute them one by one."


class TestContext:
    @pytest.mark.asyncio
    async def test_knowledge_prepended(self, make_agent, conversations, knowledge):
        knowledge.ingest("Name: John Doe\nEmail: john@example.com", {"source": "resume.txt"})
        agent = make_agent(["john@example.com"])
        conv = conversations.create()
        await agent.run(conv.id, "email")
        content = last_user_content(agent.model.calls[0])
        assert content.startswith("Reference Documents:\n[Document 1: resume.txt]")
        assert content.endswith("User Question: email")

    @pytest.mark.asyncio
    async def test_no_knowledge_leaves_input_alone(self, make_agent, conversations):
        agent = make_agent(["hi"])
        conv = conversations.create()
        await agent.run(conv.id, "hello there")
        assert last_user_content(agent.model.calls[0]) == "hello there"

    @pytest.mark.asyncio
    async def test_history_included(self, make_agent, conversations):
        conv = conversations.create()
        conversations.add_message(conv.id, "user", "My cat is called Tom")
        conversations.add_message(conv.id, "assistant", "Nice name!")
        agent = make_agent(["Tom"])
        await agent.run(conv.id, "What is my cat called?")
        sent = agent.model.calls[0]
        assert [m["content"] for m in sent[1:]] == [
            "My cat is called Tom", "Nice name!", "What is my cat called?",
        ]

    @pytest.mark.asyncio
    async def test_attachments_skip_knowledge(self, make_agent, conversations, knowledge, tmp_path: Path):
        note = tmp_path / "notes.txt"
        note.write_text("Meeting moved to Tuesday")
        agent = make_agent(["Tuesday"])
        conv = conversations.create()
        with patch.object(knowledge, "search") as search:
            await agent.run(conv.id, "When is the meeting?", [Attachment("file", str(note), "notes.txt")])
        search.assert_not_called()
        content = last_user_content(agent.model.calls[0])
        assert content == "When is the meeting?\n\n[Attachment: notes.txt]\nMeeting moved to Tuesday"

    @pytest.mark.asyncio
    async def test_knowledge_failure_is_not_fatal(self, make_agent, conversations, knowledge):
        agent = make_agent(["fine"])
        conv = conversations.create()
        with patch.object(knowledge, "search", side_effect=RuntimeError("index broken")):
            result = await agent.run(conv.id, "hello")
        assert result.text == "fine"

    @pytest.mark.asyncio
    async def test_image_sent_as_multimodal(self, make_agent, conversations, tmp_path: Path):
        image = tmp_path / "pic.png"
        image.write_bytes(b"\x89PNG")
        agent = make_agent(["A picture"])
        conv = conversations.create()
        await agent.run(conv.id, "What is this?", [Attachment("image", str(image), "pic.png")])
        content = last_user_content(agent.model.calls[0])
        assert content[0] == {"type": "text", "text": "What is this?"}
        expected = "data:image/png;base64," + base64.b64encode(b"\x89PNG").decode()
        assert content[1] == {"type": "image_url", "image_url": {"url": expected}}

    def test_unsupported_attachment(self, tmp_path: Path):
        path = tmp_path / "report.pdf"
        path.write_bytes(b"%PDF")
        text = extract_attachment_text(Attachment("file", str(path), "report.pdf"))
        assert text == "Unsupported file type: .pdf\nFile: report.pdf"


class TestEscalation:
    @pytest.mark.asyncio
    async def test_chat_answers_directly(self, make_agent, conversations):
        agent = make_agent(["Hello!"])
        conv = conversations.create()
        result = await agent.run(conv.id, "hi", mode=AgentMode.CHAT)
        assert result.text == "Hello!"
        assert result.mode is AgentMode.CHAT
        assert not result.escalated
        assert ESCALATION_SENTINEL in agent.model.calls[0][0]["content"]

    @pytest.mark.asyncio
    async def test_sentinel_switches_to_agent(self, make_agent, conversations):
        agent = make_agent([ESCALATION_SENTINEL, "Found it."])
        conv = conversations.create()
        steps: list[AgentStep] = []
        result = await agent.run(conv.id, "read /tmp/x.txt", mode=AgentMode.CHAT, on_step=steps.append)
        assert result.escalated
        assert result.mode is AgentMode.AGENT
        assert result.text == "Found it."
        assert result.iterations == 2
        assert any(s.content == "Switching to Agent mode for advanced capabilities..." for s in steps)
        # The sentinel itself is never stored
        assert [m.content for m in conversations.get(conv.id).messages] == ["read /tmp/x.txt", "Found it."]

    @pytest.mark.asyncio
    async def test_no_escalation_without_budget(self, make_agent, conversations):
        agent = make_agent([ESCALATION_SENTINEL], max_iterations=1)
        conv = conversations.create()
        result = await agent.run(conv.id, "read a file", mode=AgentMode.CHAT)
        assert not result.escalated
        assert result.iterations == 1


class TestAfterTurn:
    @pytest.mark.asyncio
    async def test_title_generated_after_first_exchange(self, make_agent, conversations):
        agent = make_agent(["Hello there!", '"Friendly Greeting"'])
        conv = conversations.create()
        await agent.run(conv.id, "hello")
        await agent.drain()
        assert conversations.get(conv.id).title == "Friendly Greeting"

    @pytest.mark.asyncio
    async def test_title_falls_back_on_model_failure(self, make_agent, conversations):
        agent = make_agent(["Hello there!", RuntimeError("model down")])
        conv = conversations.create()
        await agent.run(conv.id, "hello")
        await agent.drain()
        assert conversations.get(conv.id).title == "hello"

    @pytest.mark.asyncio
    async def test_no_title_after_later_exchanges(self, make_agent, conversations):
        conv = conversations.create("Kept")
        conversations.add_message(conv.id, "user", "earlier")
        agent = make_agent(["reply"])
        await agent.run(conv.id, "again")
        await agent.drain()
        assert conversations.get(conv.id).title == "Kept"
        assert len(agent.model.calls) == 1

    @pytest.mark.asyncio
    async def test_auto_promote(self, make_agent, conversations, knowledge):
        agent = make_agent(["Noted."], auto_promote_conversations=True)
        conv = conversations.create("Dentist")
        await agent.run(conv.id, "My dentist is Dr Smith")
        await agent.drain()
        chunks = knowledge.store.get_by_layer(KnowledgeLayer.CONVERSATION)
        assert len(chunks) == 1
        assert "Dr Smith" in chunks[0].text

    @pytest.mark.asyncio
    async def test_auto_promote_keeps_each_new_conversation(self, make_agent, conversations, knowledge):
        agent = make_agent(["Noted.", "Dentist visit"], auto_promote_conversations=True)
        first = conversations.create()
        second = conversations.create()
        await agent.run(first.id, "My dentist is Dr Smith")
        await agent.run(second.id, "My plumber is Bob")
        await agent.drain()
        chunks = knowledge.store.get_by_layer(KnowledgeLayer.CONVERSATION)
        ids = {c.metadata.extra["conversation_id"] for c in chunks}
        assert ids == {first.id, second.id}


class TestTitleHelpers:
    def test_clean_title(self):
        assert clean_title('"Trip to Rome"\nextra') == "Trip to Rome"
        assert clean_title("") == ""
        assert len(clean_title("x" * 100)) == 60

    def test_fallback_title(self):
        assert fallback_title("short") == "short"
        assert fallback_title("y" * 50) == "y" * 40 + "..."
