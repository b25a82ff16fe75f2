"""Tests for the event extraction LLM client."""

import json
from collections.abc import Generator
from datetime import datetime
from pathlib import Path
from typing import Any
from unittest.mock import Mock, patch

import httpx
import pytest
import pytz
from openai import APIError, APITimeoutError

from src.adapters.llm_client import LLMClient, load_prompt_from_file
from src.domain.exceptions import LLMAPIError

MESSAGE_DATE = datetime(2030, 5, 1, 10, 0, tzinfo=pytz.UTC)
REQUEST = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")


def _response(payload: dict[str, Any] | str) -> Mock:
    content = payload if isinstance(payload, str) else json.dumps(payload)
    response = Mock()
    response.choices = [Mock(message=Mock(content=content))]
    response.usage = Mock(prompt_tokens=120, completion_tokens=40)
    return response


@pytest.fixture
def prompt_file(tmp_path: Path) -> Path:
    path = tmp_path / "prompt.yaml"
    path.write_text('version: "test-v1"\nsystem: |\n  Extract the event.\n', encoding="utf-8")
    return path


@pytest.fixture
def openai_client() -> Generator[Mock, None, None]:
    with patch("src.adapters.llm_client.OpenAI") as mock_openai:
        instance = Mock()
        mock_openai.return_value = instance
        yield instance


@pytest.fixture
def sleep() -> Generator[Mock, None, None]:
    with patch("src.adapters.llm_client.time.sleep") as mock_sleep:
        yield mock_sleep


@pytest.fixture
def client(openai_client: Mock, prompt_file: Path) -> LLMClient:
    return LLMClient(api_key="test-key", prompt_file=prompt_file, max_retries=2)


class TestLoadPrompt:
    def test_loads_version_and_content(self, prompt_file: Path) -> None:
        prompt = load_prompt_from_file(prompt_file)

        assert prompt.version == "test-v1"
        assert prompt.content == "Extract the event.\n"
        assert len(prompt.checksum) == 64

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            load_prompt_from_file(tmp_path / "missing.yaml")

    def test_missing_system_key(self, tmp_path: Path) -> None:
        path = tmp_path / "broken.yaml"
        path.write_text('version: "v1"\n', encoding="utf-8")

        with pytest.raises(ValueError, match="system"):
            load_prompt_from_file(path)

    def test_repository_prompt_is_valid(self) -> None:
        prompt = load_prompt_from_file("config/prompts/telegram.yaml")

        assert prompt.version
        assert "hasEventData" in prompt.content


class TestExtractEventFields:
    def test_parses_camel_case_answer(self, client: LLMClient, openai_client: Mock) -> None:
        openai_client.chat.completions.create.return_value = _response(
            {
                "hasEventData": True,
                "name": "Yoga Workshop",
                "startDate": "2030-05-31T12:00:00",
                "contactAuthorForMore": True,
                "price": 15,
                "tags": None,
            }
        )

        fields = client.extract_event_fields("Yoga on Saturday", MESSAGE_DATE)

        assert fields.has_event_data
        assert fields.name == "Yoga Workshop"
        assert fields.start_date == datetime(2030, 5, 31, 10, 0, tzinfo=pytz.UTC)
        assert fields.contact_author_for_more
        assert fields.price == "15"
        assert fields.tags == []

    def test_request_carries_text_date_and_images(
        self, client: LLMClient, openai_client: Mock
    ) -> None:
        openai_client.chat.completions.create.return_value = _response(
            {"hasEventData": False}
        )

        client.extract_event_fields(
            "Yoga on Saturday", MESSAGE_DATE, ["data:image/jpeg;base64,AAAA"]
        )

        kwargs = openai_client.chat.completions.create.call_args.kwargs
        assert kwargs["response_format"] == {"type": "json_object"}
        system, user = kwargs["messages"]
        assert system == {"role": "system", "content": "Extract the event.\n"}
        text_part, image_part = user["content"]
        assert "2030-05-01 12:00 CEST" in text_part["text"]
        assert "Yoga on Saturday" in text_part["text"]
        assert image_part == {
            "type": "image_url",
            "image_url": {"url": "data:image/jpeg;base64,AAAA"},
        }

    def test_invalid_json_is_retried_then_fails(
        self, client: LLMClient, openai_client: Mock, sleep: Mock
    ) -> None:
        openai_client.chat.completions.create.return_value = _response("not json")

        with pytest.raises(LLMAPIError, match="after 3 attempts"):
            client.extract_event_fields("Yoga", MESSAGE_DATE)

        assert openai_client.chat.completions.create.call_count == 3
        assert sleep.call_count == 2

    def test_timeout_is_retried(
        self, client: LLMClient, openai_client: Mock, sleep: Mock
    ) -> None:
        openai_client.chat.completions.create.side_effect = [
            APITimeoutError(request=REQUEST),
            _response({"hasEventData": True, "name": "Yoga"}),
        ]

        fields = client.extract_event_fields("Yoga", MESSAGE_DATE)

        assert fields.name == "Yoga"
        sleep.assert_called_once_with(5)

    def test_api_error_is_not_retried(
        self, client: LLMClient, openai_client: Mock, sleep: Mock
    ) -> None:
        openai_client.chat.completions.create.side_effect = APIError(
            "invalid model", REQUEST, body=None
        )

        with pytest.raises(LLMAPIError, match="OpenAI API error"):
            client.extract_event_fields("Yoga", MESSAGE_DATE)

        sleep.assert_not_called()
