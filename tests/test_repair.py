"""Tests for local repair rules and the self-repair loop."""
import pytest

from repair import SelfRepairLoop, normalize, toggle_direction
from sinks import CollectingSink

MALFORMED_PIE = 'pie title X\n"A":1'


def test_pie_data_lines_are_reformatted() -> None:
    fixed, applied = normalize('pie title Share\n"A":1\nB：2.5\n  "C" :3')
    assert fixed == 'pie title Share\n    "A" : 1\n    "B" : 2.5\n    "C" : 3'
    assert applied == ["pie_data_lines"]


def test_fence_and_curly_quotes() -> None:
    fixed, applied = normalize("```mermaid\nflowchart TD\n  A[“Start”] --> B\n```")
    assert fixed == 'flowchart TD\n  A["Start"] --> B'
    assert applied == ["strip_fences", "plain_quotes"]


def test_direction_and_labels() -> None:
    fixed, applied = normalize("graph td\n  A[打开首页] --> B[1. 输入手机号]")
    assert fixed == 'graph TD\n  A["打开首页"] --> B["1.输入手机号"]'
    assert applied == ["direction_case", "list_number_space", "quote_labels"]


def test_valid_code_is_untouched() -> None:
    code = 'flowchart LR\n  A["开始"] --> B["结束"]'
    assert normalize(code) == (code, [])


@pytest.mark.parametrize(
    "node",
    ["A[[子程序]]", "A[(数据库)]", "A[/输入/]", "A[\\输出\\]", "A[/梯形\\]", "A[{判断}]"],
)
def test_shaped_nodes_are_not_quoted(node: str) -> None:
    code = f"flowchart TD\n  {node} --> B"
    assert normalize(code) == (code, [])


@pytest.mark.asyncio
async def test_shaped_node_with_lexical_error_still_asks_the_model(upstream, http_client, generation_config) -> None:
    upstream.reply(["flowchart TD\n  A[[子程序]] --> B"])
    sink = CollectingSink()

    result = await SelfRepairLoop(http_client=http_client).repair(
        "flowchart TD\n  A[[子程序]] --> B", "Lexical error on line 2", generation_config, sink
    )

    assert result.used_model
    assert len(upstream.requests) == 1
    assert result.artifact == "flowchart TD\n  A[[子程序]] --> B"


@pytest.mark.parametrize(
    ("before", "after"),
    [
        ("flowchart TD\n A-->B", "flowchart LR\n A-->B"),
        ("graph TB\n A-->B", "graph LR\n A-->B"),
        ("graph LR\n A-->B", "graph TD\n A-->B"),
        ("flowchart BT\n A-->B", "flowchart RL\n A-->B"),
        ("flowchart RL\n A-->B", "flowchart BT\n A-->B"),
        ("sequenceDiagram\n A->>B: hi", "sequenceDiagram\n A->>B: hi"),
    ],
)
def test_toggle_direction(before: str, after: str) -> None:
    assert toggle_direction(before) == after


@pytest.mark.asyncio
async def test_upstream_failure_returns_local_fix_with_warning(upstream, http_client, generation_config) -> None:
    upstream.reply(status=503, body="service unavailable")
    sink = CollectingSink()

    result = await SelfRepairLoop(http_client=http_client).repair(MALFORMED_PIE, None, generation_config, sink)

    assert result.artifact == 'pie title X\n    "A" : 1'
    assert result.used_model
    assert "503" in result.warning
    assert sink.terminal["artifact"] == result.artifact
    assert sink.terminal["warning"] == result.warning
    assert "error" not in sink.terminal


@pytest.mark.asyncio
async def test_matching_error_skips_the_model(upstream, http_client, generation_config) -> None:
    sink = CollectingSink()

    result = await SelfRepairLoop(http_client=http_client).repair(
        MALFORMED_PIE, "Parse error on line 2: Expecting 'txt', got 'STR'", generation_config, sink
    )

    assert upstream.requests == []
    assert not result.used_model
    assert sink.events == [{"artifact": 'pie title X\n    "A" : 1', "done": True}]


@pytest.mark.asyncio
async def test_model_repair_streams_and_embeds_error(upstream, http_client, generation_config) -> None:
    upstream.reply(["```mermaid\n", "flowchart TD\n", "  A --> B\n", "```"])
    sink = CollectingSink()

    result = await SelfRepairLoop(http_client=http_client).repair(
        "flowchart TD\n  A -> B", "Parse error on line 2: got 'MINUS'", generation_config, sink
    )

    assert result.artifact == "flowchart TD\n  A --> B"
    assert sink.deltas == ["```mermaid\n", "flowchart TD\n", "  A --> B\n", "```"]
    prompt = upstream.payloads[0]["messages"][-1]["content"]
    assert "A -> B" in prompt
    assert "got 'MINUS'" in prompt


@pytest.mark.asyncio
async def test_nothing_to_fall_back_on(upstream, http_client, generation_config) -> None:
    upstream.reply(status=500, body="boom")
    sink = CollectingSink()

    result = await SelfRepairLoop(http_client=http_client).repair(
        "flowchart TD\n  A --> B", "odd error", generation_config, sink
    )

    assert result.artifact is None
    assert sink.terminal == {"error": "AI service returned an error (500): boom", "done": True}
