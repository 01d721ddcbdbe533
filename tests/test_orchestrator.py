import pytest

from conftest import FakeEngine, action
from gdbcopilot.core.orchestrator import build_messages
from gdbcopilot.core.state import ChatMessage, ChatRequest, ContextItem, OrchestrationPhase, ParseStrategy
from gdbcopilot.errors import CaptureTimeout, CircuitOpenError, ErrorKind, ProviderError
from gdbcopilot.llm.context import ContextConfig, estimate_tokens
from gdbcopilot.prompts.defaults import NOT_RUNNING_SUFFIX, SYSTEM_PROMPT


def network_error():
    return ProviderError("anthropic", ErrorKind.NETWORK, "connection reset")


def test_happy_json(make_orchestrator):
    orch, client, engine = make_orchestrator([action("Let's look at main.", ["break main", "run"])])
    result = orch.handle(ChatRequest("inspect main"))
    assert result.text == "Let's look at main."
    assert engine.captured == ["break main", "run"]
    assert result.executed_commands == ["break main", "run"]
    assert len(client.calls) == 1
    assert client.calls[0]["system_prompt"] == SYSTEM_PROMPT
    assert result.phase is OrchestrationPhase.DONE


def test_wait_for_output_runs_follow_up(make_orchestrator):
    engine = FakeEngine(outputs={"break main": "Breakpoint 1 at 0x401000", "run": "Starting program..."})
    orch, client, _ = make_orchestrator(
        [action("Let's look at main.", ["break main", "run"], wait=True), action("Execution stopped at main.")],
        engine=engine,
    )
    result = orch.handle(ChatRequest("inspect main"))
    assert result.text == "Execution stopped at main."
    assert result.executed_commands == ["break main", "run"]
    assert result.combined_output == "Breakpoint 1 at 0x401000\nStarting program..."
    assert len(client.calls) == 2
    follow_up_user = client.calls[1]["messages"][-1].content
    assert "Type: command_output\nDescription: GDB Command Output\n" in follow_up_user
    assert "Breakpoint 1 at 0x401000\nStarting program..." in follow_up_user
    assert follow_up_user.endswith("inspect main")


def test_embedded_json(make_orchestrator):
    reply = 'Sure! Here is the plan:\n{"text":"ok","gdbCommands":[],"waitForOutput":false}\nThanks'
    orch, client, _ = make_orchestrator([reply])
    result = orch.handle(ChatRequest("hi"))
    assert result.text == "ok"
    assert result.parse_strategy is ParseStrategy.EXTRACTED


def test_reformat_turn(make_orchestrator):
    engine = FakeEngine(outputs={"info breakpoints": "No breakpoints or watchpoints."})
    orch, client, _ = make_orchestrator(
        [
            "I'll run `info breakpoints`.",
            action("I'll run info breakpoints.", ["info breakpoints"], wait=True),
            action("There are no breakpoints yet."),
        ],
        engine=engine,
    )
    result = orch.handle(ChatRequest("what breakpoints?"))
    assert result.reformatted
    assert engine.captured == ["info breakpoints"]
    assert result.text == "There are no breakpoints yet."
    assert len(client.calls) == 3
    reformat_msg = client.calls[1]["messages"][-1].content
    assert reformat_msg.startswith("ERROR: Your previous response was not in the required JSON format.")
    assert reformat_msg.endswith("Original response to reformat:\nI'll run `info breakpoints`.")


def test_failed_reformat_keeps_original_text(make_orchestrator):
    orch, client, _ = make_orchestrator(["plain answer", network_error()])
    result = orch.handle(ChatRequest("hi"))
    assert result.text == "plain answer"
    assert not result.reformatted
    # the reformat turn gets a single attempt
    assert len(client.calls) == 2


def test_reformat_can_be_disabled(make_orchestrator):
    orch, client, _ = make_orchestrator(["plain answer"], reformat_enabled=False)
    assert orch.handle(ChatRequest("hi")).text == "plain answer"
    assert len(client.calls) == 1


def test_circuit_open_refuses_without_calling_provider(make_orchestrator):
    orch, client, _ = make_orchestrator([network_error() for _ in range(5)])
    orch.resilience.policy.max_attempts = 1
    for _ in range(5):
        with pytest.raises(ProviderError):
            orch.handle(ChatRequest("hi"))
    with pytest.raises(CircuitOpenError) as exc:
        orch.handle(ChatRequest("hi"))
    assert exc.value.kind is ErrorKind.CIRCUIT_OPEN
    assert len(client.calls) == 5


def test_no_debugger_appends_note_and_skips_follow_up(make_orchestrator):
    engine = FakeEngine(running=False)
    orch, client, _ = make_orchestrator([action("Set a breakpoint.", ["break main"], wait=True)], engine=engine)
    result = orch.handle(ChatRequest("go"))
    assert result.text == "Set a breakpoint." + NOT_RUNNING_SUFFIX
    assert result.text.endswith("(Note: GDB is not running, cannot execute commands)")
    assert engine.captured == []
    assert len(client.calls) == 1


def test_command_failure_is_not_fatal(make_orchestrator):
    engine = FakeEngine(outputs={"x/4x $sp": CaptureTimeout(), "bt": "#0 main"})
    orch, client, _ = make_orchestrator([action("look", ["x/4x $sp", "bt"])], engine=engine)
    result = orch.handle(ChatRequest("stack?"))
    assert result.executed_commands == ["x/4x $sp", "bt"]
    assert result.combined_output.startswith("[command failed] x/4x $sp:")
    assert result.combined_output.endswith("#0 main")


def test_follow_up_failure_keeps_primary_text(make_orchestrator):
    engine = FakeEngine(outputs={"bt": "#0 main"})
    orch, client, _ = make_orchestrator(
        [action("primary", ["bt"], wait=True)] + [network_error() for _ in range(3)], engine=engine
    )
    result = orch.handle(ChatRequest("where?"))
    assert result.text == "primary"
    assert result.follow_up_error
    # primary + follow-up retries never exceed the attempt budget
    assert len(client.calls) == 1 + 3


def test_empty_output_skips_follow_up(make_orchestrator):
    orch, client, _ = make_orchestrator([action("primary", ["bt"], wait=True)])
    assert orch.handle(ChatRequest("where?")).text == "primary"
    assert len(client.calls) == 1


def test_primary_retries_then_succeeds(make_orchestrator):
    orch, client, _ = make_orchestrator([network_error(), action("recovered")])
    result = orch.handle(ChatRequest("hi"))
    assert result.text == "recovered"
    assert result.provider_calls == 2


def test_cache_hit_skips_provider_and_commands(make_orchestrator):
    engine = FakeEngine()
    orch, client, _ = make_orchestrator([action("cached answer", ["bt"])], engine=engine, cache_enabled=True)
    first = orch.handle(ChatRequest("same"))
    second = orch.handle(ChatRequest("same"))
    assert not first.from_cache
    assert second.from_cache
    assert second.text == "cached answer"
    assert len(client.calls) == 1
    assert engine.captured == ["bt"]
    assert orch.metrics.provider("anthropic").cache_hits == 1


def test_context_is_trimmed_before_sending(make_orchestrator):
    history = [ChatMessage("user" if i % 2 == 0 else "assistant", "x" * 400) for i in range(20)]
    cfg = ContextConfig(enabled=True, max_tokens=500, priority_recent_messages=2, compression_threshold=5)
    orch, client, _ = make_orchestrator([action("fine")], context=cfg)
    req = ChatRequest("question", history=history)
    orch.handle(req)
    sent = client.calls[0]["messages"]
    assert len(sent) == 1 + 2 + 1
    assert sent[0].role == "system"
    assert estimate_tokens(ChatRequest("question", history=sent[:-1])) <= 500
    assert orch.metrics.snapshot()["global"]["context_trims"] == 1


def test_context_block_is_prepended():
    req = ChatRequest("why?", context=[ContextItem("file", "main.c", "int main(){}"), ContextItem("note", "n")])
    content = build_messages(req)[-1].content
    assert content == (
        "\n\n--- Provided Context ---\n"
        "Type: file\nDescription: main.c\nContent:\n```\nint main(){}\n```\n---\n"
        "Type: note\nDescription: n\n---\n"
        "why?"
    )


def test_reformat_request_is_trimmed_to_budget(make_orchestrator):
    history = [ChatMessage("user" if i % 2 == 0 else "assistant", "y" * 200) for i in range(4)]
    cfg = ContextConfig(enabled=True, max_tokens=200, priority_recent_messages=2, compression_threshold=50)
    rambling = "The crash looks like a null dereference in parse_args. " * 105
    orch, client, _ = make_orchestrator([rambling, action("Check argv.", [])], context=cfg)
    result = orch.handle(ChatRequest("why does it crash?", history=history))
    assert result.reformatted
    assert result.text == "Check argv."
    assert len(client.calls) == 2
    for call in client.calls:
        sent = call["messages"]
        assert estimate_tokens(ChatRequest(sent[-1].content, history=sent[:-1])) <= 200
    assert client.calls[1]["messages"][-1].content.startswith("ERROR: Your previous response")


def test_blank_commands_are_not_sent_to_gdb(make_orchestrator):
    orch, _, engine = make_orchestrator([action("Backtrace.", [" bt ", "", "   "])])
    result = orch.handle(ChatRequest("where am I?"))
    assert engine.captured == ["bt"]
    assert result.executed_commands == ["bt"]


def test_only_blank_commands_do_not_need_a_debugger(make_orchestrator):
    orch, _, _ = make_orchestrator([action("Nothing to run.", ["", " "])], engine=FakeEngine(running=False))
    result = orch.handle(ChatRequest("hello"))
    assert result.text == "Nothing to run."
