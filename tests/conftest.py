import io
from types import SimpleNamespace

import pytest
from rich.console import Console

import code_assistant


def make_chunks(text, size=7):
    """Split a reply into streamed chat completion chunks."""
    chunks = [SimpleNamespace(choices=[])]
    for start in range(0, len(text), size):
        delta = SimpleNamespace(content=text[start:start + size])
        chunks.append(SimpleNamespace(choices=[SimpleNamespace(delta=delta)]))
    return chunks


class FakeCompletions:
    def __init__(self, replies):
        self.replies = list(replies)
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return iter(make_chunks(reply))


class FakeClient:
    def __init__(self, replies=()):
        self.completions = FakeCompletions(replies)
        self.chat = SimpleNamespace(completions=self.completions)
        self.close_calls = 0

    def close(self):
        self.close_calls += 1


class FakePromptSession:
    """Answers prompts from a script; raises EOFError once the script runs out."""

    def __init__(self, answers=()):
        self.answers = list(answers)
        self.prompts = []

    def prompt(self, message, **kwargs):
        self.prompts.append(message)
        if not self.answers:
            raise EOFError
        answer = self.answers.pop(0)
        if isinstance(answer, BaseException):
            raise answer
        return answer


@pytest.fixture
def output(monkeypatch):
    buffer = io.StringIO()
    monkeypatch.setattr(code_assistant, "console", Console(file=buffer, width=400, color_system=None))
    return buffer


@pytest.fixture
def workdir(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    return tmp_path


@pytest.fixture
def fakes():
    return SimpleNamespace(FakeClient=FakeClient, FakePromptSession=FakePromptSession)


@pytest.fixture
def make_context():
    def _make(files, replies=(), answers=()):
        return code_assistant.AssistantContext(
            code_assistant.Settings(api_key="test-key"),
            files,
            client=FakeClient(replies),
            prompt_session=FakePromptSession(answers),
        )
    return _make
