"""Tests for the click command line front-end."""

import io
from unittest.mock import AsyncMock, patch

import pytest
from click.testing import CliRunner
from rich.console import Console

from conftest import FakeBackendFactory
from ollama_assistant.cli import StreamingDisplay, main
from ollama_assistant.errors import BackendError
from ollama_assistant.types import EventType, SessionEvent, TextFragment, UsageReport


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "ollama_assistant.yaml"
    path.write_text("endpoint_url: http://localhost:11434\nmodel_name: llama3\n")
    return str(path)


def _invoke(config_file, *args):
    return CliRunner().invoke(main, ["--config", config_file, *args])


def test_complete_prints_new_code(config_file):
    factory = FakeBackendFactory(reply="```python\nrange(3):\n    pass\n```")
    with patch(
        "ollama_assistant.core.completion.default_backend_factory",
        return_value=factory,
    ):
        result = _invoke(config_file, "complete", "--before", "for i in range", "-l", "Python")

    assert result.exit_code == 0, result.output
    assert result.output.rstrip("\n") == "(3):\n    pass"


def test_ask_streams_reply(config_file, tmp_path):
    source = tmp_path / "main.py"
    source.write_text("print('hi')\n")
    factory = FakeBackendFactory(items=[
        TextFragment("It prints "),
        TextFragment("hi."),
        UsageReport(input_tokens=3, output_tokens=4, total_tokens=7),
    ])
    with patch(
        "ollama_assistant.core.session.default_backend_factory",
        return_value=factory,
    ):
        result = _invoke(config_file, "ask", "what does this do?", "--file", str(source))

    assert result.exit_code == 0, result.output
    assert "It prints hi." in result.output
    prompt = factory.created[0].stream_calls[0][0][0].content
    assert "file 'main.py'" in prompt
    assert "print('hi')" in prompt


def test_models_table(config_file):
    with patch(
        "ollama_assistant.cli.list_models",
        new=AsyncMock(return_value=["llama3", "qwen3:8b"]),
    ):
        result = _invoke(config_file, "models")

    assert result.exit_code == 0, result.output
    assert "qwen3:8b" in result.output


def test_models_unreachable(config_file):
    with patch(
        "ollama_assistant.cli.list_models",
        new=AsyncMock(side_effect=BackendError("Could not list models")),
    ):
        result = _invoke(config_file, "models")

    assert result.exit_code == 1
    assert "Could not list models" in result.output


@pytest.mark.parametrize("event_type", [EventType.ERROR, EventType.CANCELED, EventType.LOG_ENTRY])
def test_display_prints_bracketed_text_literally(event_type):
    out = io.StringIO()
    display = StreamingDisplay(Console(file=out, width=200), verbose=True)

    display.handle(SessionEvent(event_type, {"text": "model [/red] said [bold]no"}))

    assert "model [/red] said [bold]no" in out.getvalue()


def test_models_error_with_brackets(config_file):
    with patch(
        "ollama_assistant.cli.list_models",
        new=AsyncMock(side_effect=BackendError("404 [/api/tags]")),
    ):
        result = _invoke(config_file, "models")

    assert result.exit_code == 1
    assert "404 [/api/tags]" in result.output
