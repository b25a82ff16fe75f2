"""LLM client adapter for event field extraction.

Implements EventExtractorProtocol with OpenAI chat completions in JSON mode.
"""

import hashlib
import json
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Final

import yaml
from openai import APIError, APITimeoutError, OpenAI
from openai import RateLimitError as OpenAIRateLimitError
from pydantic import ValidationError as PydanticValidationError

from src.config.logging_config import get_logger
from src.domain.exceptions import LLMAPIError, ValidationError
from src.domain.models import EXTRACTION_DEFAULT_TIMEZONE, EventFields

PREVIEW_LENGTH_RESPONSE: Final[int] = 500
"""Maximum characters of a raw response included in debug logs."""

DEFAULT_PROMPT_PATH: Final[Path] = Path("config/prompts/telegram.yaml")

logger = get_logger(__name__)


@dataclass(frozen=True)
class PromptFileData:
    """Loaded prompt payload with metadata."""

    content: str
    version: str
    checksum: str
    path: Path


_PROMPT_CACHE: dict[Path, tuple[float, PromptFileData]] = {}


def load_prompt_from_file(file_path: str | Path) -> PromptFileData:
    """Load a YAML prompt (``version`` and ``system`` keys) with mtime caching.

    Relative paths are resolved against the working directory first and the
    repository root second.

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValueError: If the YAML has an invalid structure
    """
    raw_path = Path(file_path).expanduser()
    path = raw_path if raw_path.is_absolute() else (Path.cwd() / raw_path).resolve()
    if not path.exists():
        repo_root = Path(__file__).resolve().parents[2]
        alt_path = (repo_root / raw_path).resolve()
        if not alt_path.exists():
            raise FileNotFoundError(f"Prompt file not found: {file_path}")
        path = alt_path

    mtime = path.stat().st_mtime
    cached = _PROMPT_CACHE.get(path)
    if cached and cached[0] == mtime:
        return cached[1]

    parsed = yaml.safe_load(path.read_text(encoding="utf-8"))
    if not isinstance(parsed, dict):
        raise ValueError(f"Prompt YAML must be a mapping: {path}")
    version = parsed.get("version")
    system_prompt = parsed.get("system")
    if not isinstance(version, str):
        raise ValueError(f"Prompt YAML missing 'version' string: {path}")
    if not isinstance(system_prompt, str):
        raise ValueError(f"Prompt YAML missing 'system' string: {path}")

    data = PromptFileData(
        content=system_prompt,
        version=version,
        checksum=hashlib.sha256(system_prompt.encode("utf-8")).hexdigest(),
        path=path,
    )
    _PROMPT_CACHE[path] = (mtime, data)
    return data


class LLMClient:
    """OpenAI client extracting event fields from message text and flyers."""

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        temperature: float = 0.2,
        timeout: int = 60,
        prompt_file: str | Path = DEFAULT_PROMPT_PATH,
        max_retries: int = 3,
    ) -> None:
        """Initialize LLM client.

        Args:
            api_key: OpenAI API key
            model: Vision-capable chat model name
            temperature: Sampling temperature
            timeout: Request timeout in seconds
            prompt_file: YAML prompt file
            max_retries: Retries on rate limit, timeout and invalid answers
        """
        self.client = OpenAI(api_key=api_key, timeout=timeout)
        self.model = model
        self.temperature = temperature
        self.max_retries = max_retries

        prompt = load_prompt_from_file(prompt_file)
        self.system_prompt = prompt.content
        self.prompt_version = prompt.version
        logger.info(
            "llm_prompt_ready",
            prompt_version=prompt.version,
            prompt_hash=prompt.checksum[:12],
            prompt_path=str(prompt.path),
        )

    def _build_user_content(
        self, text: str, reference_date: datetime, image_data_urls: list[str]
    ) -> list[dict[str, Any]]:
        local_date = reference_date.astimezone(EXTRACTION_DEFAULT_TIMEZONE)
        prompt = f"Message date: {local_date.strftime('%A, %Y-%m-%d %H:%M %Z')}\n"
        prompt += f"\nMessage:\n{text}" if text else "\nMessage: (image only)"

        content: list[dict[str, Any]] = [{"type": "text", "text": prompt}]
        for data_url in image_data_urls:
            content.append({"type": "image_url", "image_url": {"url": data_url}})
        return content

    def extract_event_fields_once(
        self,
        text: str,
        reference_date: datetime,
        image_data_urls: list[str] | None = None,
    ) -> EventFields:
        """Single extraction call without retries.

        Raises:
            LLMAPIError: On API communication errors
            ValidationError: When the answer is not valid event JSON
        """
        images = list(image_data_urls or [])
        start_time = time.perf_counter()
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": self.system_prompt},
                    {
                        "role": "user",
                        "content": self._build_user_content(
                            text, reference_date, images
                        ),
                    },
                ],
                temperature=self.temperature,
                response_format={"type": "json_object"},
            )
        except OpenAIRateLimitError as exc:
            raise LLMAPIError(f"Rate limit exceeded: {exc}") from exc
        except APITimeoutError as exc:
            raise LLMAPIError(f"Request timed out: {exc}") from exc
        except APIError as exc:
            raise LLMAPIError(f"OpenAI API error: {exc}") from exc

        latency_ms = int((time.perf_counter() - start_time) * 1000)
        content = response.choices[0].message.content
        if not content:
            raise ValidationError("Empty response from LLM")

        try:
            fields = EventFields.model_validate(json.loads(content))
        except json.JSONDecodeError as exc:
            raise ValidationError(f"Invalid JSON from LLM: {exc}") from exc
        except PydanticValidationError as exc:
            raise ValidationError(f"Response validation failed: {exc}") from exc

        logger.info(
            "llm_extraction_finished",
            model=self.model,
            latency_ms=latency_ms,
            images=len(images),
            tokens_in=response.usage.prompt_tokens if response.usage else 0,
            tokens_out=response.usage.completion_tokens if response.usage else 0,
            has_event_data=fields.has_event_data,
        )
        logger.debug("llm_raw_response", preview=content[:PREVIEW_LENGTH_RESPONSE])
        return fields

    def extract_event_fields(
        self,
        text: str,
        reference_date: datetime,
        image_data_urls: list[str] | None = None,
    ) -> EventFields:
        """Extract event fields, retrying on rate limits, timeouts and bad answers.

        Args:
            text: HTML text of the trigger and adjacent messages
            reference_date: Date of the trigger message
            image_data_urls: JPEG data URLs of flyers

        Returns:
            Validated EventFields

        Raises:
            LLMAPIError: When all attempts failed
        """
        for attempt in range(self.max_retries + 1):
            try:
                return self.extract_event_fields_once(
                    text, reference_date, image_data_urls
                )
            except (ValidationError, LLMAPIError) as exc:
                error_msg = str(exc).lower()
                is_rate_limit = "rate limit" in error_msg
                is_timeout = "timed out" in error_msg or "timeout" in error_msg
                is_validation = isinstance(exc, ValidationError)

                if attempt >= self.max_retries or not (
                    is_rate_limit or is_timeout or is_validation
                ):
                    if is_validation:
                        raise LLMAPIError(
                            f"Invalid extraction after {attempt + 1} attempts: {exc}"
                        ) from exc
                    raise

                if is_rate_limit:
                    delay = 10 * (attempt + 1)
                elif is_timeout:
                    delay = 5 * (attempt + 1)
                else:
                    delay = 2 * (attempt + 1)
                logger.warning(
                    "llm_extraction_retry",
                    attempt=attempt + 1,
                    max_retries=self.max_retries,
                    delay_seconds=delay,
                    error=str(exc),
                )
                time.sleep(delay)

        raise LLMAPIError("Extraction retries exhausted")
