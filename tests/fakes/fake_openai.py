"""Scripted stand-in for AsyncOpenAI chat completions."""

import json
from types import SimpleNamespace
from typing import Any


def make_completion(
    content: str | None = None,
    tool_calls: list[Any] | None = None,
    prompt_tokens: int = 100,
    completion_tokens: int = 50,
    cached_tokens: int = 0,
) -> SimpleNamespace:
    """Completion object shaped like openai's ChatCompletion."""
    message = SimpleNamespace(content=content, tool_calls=tool_calls)
    usage = SimpleNamespace(
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        prompt_tokens_details=SimpleNamespace(cached_tokens=cached_tokens),
    )
    return SimpleNamespace(choices=[SimpleNamespace(message=message)], usage=usage)


def make_json_completion(payload: dict[str, Any], **kwargs: Any) -> SimpleNamespace:
    return make_completion(content=json.dumps(payload), **kwargs)


def make_tool_call(call_id: str, name: str, arguments: dict[str, Any]) -> SimpleNamespace:
    return SimpleNamespace(
        id=call_id,
        type="function",
        function=SimpleNamespace(name=name, arguments=json.dumps(arguments)),
    )


class FakeCompletions:
    """Returns (or raises) scripted items in order and records every call."""

    def __init__(self, responses: list[Any] | None = None):
        self.responses = list(responses or [])
        self.calls: list[dict[str, Any]] = []

    async def create(self, **params: Any) -> Any:
        self.calls.append(params)
        if not self.responses:
            raise AssertionError("No scripted completion left")
        item = self.responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


class FakeOpenAI:
    def __init__(self, responses: list[Any] | None = None):
        self.completions = FakeCompletions(responses)
        self.chat = SimpleNamespace(completions=self.completions)


async def no_sleep(_seconds: float) -> None:
    return None
