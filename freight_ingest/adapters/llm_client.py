"""LLM client adapter for structured ad extraction.

Implements ExtractionClientProtocol with OpenAI integration. One request
carries a whole batch of ad texts serialized as a YAML list of
``{id, text}`` items; the answer is constrained by the JSON schema stored
next to the system prompt in ``config/prompts/<ad_type>.yaml``.
"""

import hashlib
import json
import time
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final

import yaml
from openai import APIError, APITimeoutError, OpenAI
from openai import RateLimitError as OpenAIRateLimitError
from pydantic import ValidationError as PydanticValidationError

from freight_ingest.config.logging_config import get_logger
from freight_ingest.domain.exceptions import LLMAPIError, ValidationError
from freight_ingest.domain.extraction_constants import LLM_SEED
from freight_ingest.domain.models import AdType, ExtractedLoad, ExtractedVehicle
from freight_ingest.services.extraction_postprocessor import (
    prepare_load_batch_text,
    prepare_vehicle_batch_text,
)

# Token cost per 1M tokens
TOKEN_COSTS: Final[dict[str, dict[str, float]]] = {
    "gpt-4o-mini": {"input": 0.150, "output": 0.600},
    "gpt-4o": {"input": 2.50, "output": 10.00},
}

RATE_LIMIT_BACKOFF_SECONDS: Final[int] = 10
"""Delay unit after a rate limit (10s, 20s, 30s)."""

TIMEOUT_BACKOFF_SECONDS: Final[int] = 5
"""Delay unit after a timeout (5s, 10s, 15s)."""

VALIDATION_BACKOFF_SECONDS: Final[int] = 2
"""Delay unit after an unparseable response (2s, 4s, 6s)."""

RECORDS_KEY_BY_AD_TYPE: Final[dict[AdType, str]] = {
    AdType.LOAD: "loads",
    AdType.VEHICLE: "vehicles",
}

logger = get_logger(__name__)


@dataclass(frozen=True)
class PromptFileData:
    """Loaded prompt payload with metadata."""

    content: str
    version: str
    checksum: str
    size_bytes: int
    path: Path
    schema_name: str
    schema: dict[str, Any]


@dataclass
class _PromptCacheEntry:
    """Cache entry storing metadata for a prompt file."""

    mtime: float
    data: PromptFileData


_PROMPT_CACHE: dict[Path, _PromptCacheEntry] = {}

DEFAULT_PROMPTS_DIR: Final[Path] = Path("config/prompts")


def load_prompt_from_file(file_path: str) -> PromptFileData:
    """Load a prompt YAML file with caching and metadata.

    The file must be a mapping with ``version``, ``system``, ``schema_name``
    and ``schema`` keys.

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValueError: If the prompt file has invalid structure
    """
    raw_path = Path(file_path).expanduser()
    path = raw_path if raw_path.is_absolute() else (Path.cwd() / raw_path).resolve()

    if not path.exists():
        repo_root = Path(__file__).resolve().parents[2]
        alt_path = (repo_root / raw_path).resolve()
        if alt_path.exists():
            path = alt_path
        else:
            raise FileNotFoundError(f"Prompt file not found: {file_path}")

    stat_result = path.stat()
    cache_entry = _PROMPT_CACHE.get(path)
    if cache_entry and cache_entry.mtime == stat_result.st_mtime:
        return cache_entry.data

    parsed = yaml.safe_load(path.read_text(encoding="utf-8"))
    if not isinstance(parsed, dict):
        raise ValueError(f"Prompt YAML must be a mapping: {path}")

    version = parsed.get("version")
    if not isinstance(version, str):
        raise ValueError(f"Prompt YAML missing 'version' string: {path}")

    system_prompt = parsed.get("system")
    if not isinstance(system_prompt, str):
        raise ValueError(f"Prompt YAML missing 'system' string: {path}")

    schema = parsed.get("schema")
    if not isinstance(schema, dict):
        raise ValueError(f"Prompt YAML missing 'schema' mapping: {path}")

    schema_name = parsed.get("schema_name") or path.stem

    # The schema is part of what the model sees, so it is part of the checksum
    fingerprint = system_prompt + json.dumps(schema, sort_keys=True, ensure_ascii=False)
    prompt_data = PromptFileData(
        content=system_prompt,
        version=version,
        checksum=hashlib.sha256(fingerprint.encode("utf-8")).hexdigest(),
        size_bytes=len(system_prompt.encode("utf-8")),
        path=path,
        schema_name=str(schema_name),
        schema=schema,
    )

    _PROMPT_CACHE[path] = _PromptCacheEntry(mtime=stat_result.st_mtime, data=prompt_data)
    return prompt_data


def build_batch_payload(items: Sequence[tuple[int, str]]) -> str:
    """Serialize ``(id, text)`` items as the YAML list the prompt expects.

    Example:
        >>> print(build_batch_payload([(1, "Toshkentdan Samarqandga")]))
        - id: 1
          text: Toshkentdan Samarqandga
    """
    return yaml.safe_dump(
        [{"id": item_id, "text": text} for item_id, text in items],
        allow_unicode=True,
        sort_keys=False,
        width=10_000,
    )


def parse_extraction_response(
    ad_type: AdType, data: Any, item_ids: set[int] | None = None
) -> list[ExtractedLoad] | list[ExtractedVehicle]:
    """Flatten ``{"messages": [{id, phone, loads|vehicles: [...]}]}`` into records.

    Records inherit the message id, and the message phone when they carry
    none. Malformed records are skipped; ids that were not sent are ignored.

    Raises:
        ValidationError: If the response has no ``messages`` list
    """
    if not isinstance(data, dict) or not isinstance(data.get("messages"), list):
        raise ValidationError("Extraction response missing 'messages' list")

    model: type[ExtractedLoad] | type[ExtractedVehicle] = (
        ExtractedLoad if ad_type == AdType.LOAD else ExtractedVehicle
    )
    records_key = RECORDS_KEY_BY_AD_TYPE[ad_type]
    records: list[Any] = []

    for message in data["messages"]:
        if not isinstance(message, dict) or message.get("id") is None:
            continue
        for raw in message.get(records_key) or []:
            if not isinstance(raw, dict):
                continue
            payload = {**raw, "id": message["id"]}
            if not payload.get("phone"):
                payload["phone"] = message.get("phone")
            try:
                record = model.model_validate(payload)
            except PydanticValidationError as e:
                logger.warning(
                    "llm_record_invalid",
                    ad_type=ad_type.value,
                    message_id=message.get("id"),
                    error=str(e),
                )
                continue
            if item_ids is not None and record.id not in item_ids:
                logger.warning(
                    "llm_record_unknown_id", ad_type=ad_type.value, message_id=record.id
                )
                continue
            records.append(record)

    return records


class LLMClient:
    """OpenAI client extracting loads and vehicles from batches of ad texts."""

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        temperature: float = 0.0,
        top_p: float = 1.0,
        seed: int = LLM_SEED,
        timeout: int = 120,
        max_retries: int = 3,
        prompts_dir: str | Path = DEFAULT_PROMPTS_DIR,
        client: OpenAI | None = None,
    ) -> None:
        """Initialize LLM client.

        Args:
            api_key: OpenAI API key
            model: Model name
            temperature: Sampling temperature (0 for repeatable extraction)
            top_p: Nucleus sampling mass
            seed: Fixed sampling seed
            timeout: Request timeout in seconds
            max_retries: Attempts per batch before giving up
            prompts_dir: Directory holding load.yaml and vehicle.yaml
            client: Preconfigured OpenAI client (tests)
        """
        self.client = client or OpenAI(api_key=api_key, timeout=timeout)
        self.model = model
        self.temperature = temperature
        self.top_p = top_p
        self.seed = seed
        self.max_retries = max_retries
        self.prompts: dict[AdType, PromptFileData] = {
            ad_type: load_prompt_from_file(str(Path(prompts_dir) / f"{ad_type.value}.yaml"))
            for ad_type in AdType
        }
        self.last_usage: dict[str, float] = {}

        for ad_type, prompt in self.prompts.items():
            logger.info(
                "llm_prompt_ready",
                ad_type=ad_type.value,
                prompt_version=prompt.version,
                prompt_hash=prompt.checksum,
                prompt_path=str(prompt.path),
                prompt_size_bytes=prompt.size_bytes,
            )

    def extract_batch(
        self, ad_type: AdType, items: Sequence[tuple[int, str]]
    ) -> list[ExtractedLoad] | list[ExtractedVehicle]:
        """Extract records for a batch with retry on transient failures.

        Raises:
            LLMAPIError: On API errors after all retries
            ValidationError: On validation failure after all retries
        """
        if not items:
            return []

        payload = build_batch_payload(items)
        if ad_type == AdType.LOAD:
            payload = prepare_load_batch_text(payload)
        else:
            payload = prepare_vehicle_batch_text(payload)
        item_ids = {item_id for item_id, _ in items}

        last_error: Exception | None = None
        for attempt in range(self.max_retries):
            try:
                data = self._request(ad_type, payload)
                return parse_extraction_response(ad_type, data, item_ids)
            except (ValidationError, LLMAPIError) as e:
                last_error = e
                error_msg = str(e).lower()
                is_timeout = "timed out" in error_msg or "timeout" in error_msg
                is_rate_limit = "rate limit" in error_msg
                is_validation = isinstance(e, ValidationError)

                if attempt + 1 >= self.max_retries or not (
                    is_timeout or is_rate_limit or is_validation
                ):
                    raise

                if is_rate_limit:
                    delay = RATE_LIMIT_BACKOFF_SECONDS * (attempt + 1)
                elif is_timeout:
                    delay = TIMEOUT_BACKOFF_SECONDS * (attempt + 1)
                else:
                    delay = VALIDATION_BACKOFF_SECONDS * (attempt + 1)

                logger.warning(
                    "llm_batch_retry",
                    ad_type=ad_type.value,
                    attempt=attempt + 1,
                    max_retries=self.max_retries,
                    delay_seconds=delay,
                    error=str(e),
                )
                time.sleep(delay)

        raise LLMAPIError(f"Failed after {self.max_retries} attempts: {last_error}")

    def _request(self, ad_type: AdType, payload: str) -> Any:
        """Send one chat completion and return the decoded JSON body."""
        prompt = self.prompts[ad_type]
        start_time = time.time()

        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": prompt.content},
                    {"role": "user", "content": payload},
                ],
                temperature=self.temperature,
                top_p=self.top_p,
                seed=self.seed,
                response_format={
                    "type": "json_schema",
                    "json_schema": {"name": prompt.schema_name, "schema": prompt.schema},
                },
            )
        except OpenAIRateLimitError as e:
            raise LLMAPIError(f"Rate limit exceeded: {e}") from e
        except APITimeoutError as e:
            raise LLMAPIError(f"Request timed out: {e}") from e
        except APIError as e:
            raise LLMAPIError(f"OpenAI API error: {e}") from e

        latency_ms = int((time.time() - start_time) * 1000)
        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise ValidationError("Empty response from LLM")

        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Invalid JSON from LLM: {e}") from e

        tokens_in = response.usage.prompt_tokens if response.usage else 0
        tokens_out = response.usage.completion_tokens if response.usage else 0
        cost_usd = self._calculate_cost(tokens_in, tokens_out)
        self.last_usage = {
            "tokens_in": tokens_in,
            "tokens_out": tokens_out,
            "cost_usd": cost_usd,
            "latency_ms": latency_ms,
        }
        logger.info(
            "llm_batch_completed",
            ad_type=ad_type.value,
            model=self.model,
            prompt_version=prompt.version,
            latency_ms=latency_ms,
            tokens_in=tokens_in,
            tokens_out=tokens_out,
            cost_usd=round(cost_usd, 6),
        )
        return data

    def _calculate_cost(self, tokens_in: int, tokens_out: int) -> float:
        costs = TOKEN_COSTS.get(self.model, TOKEN_COSTS["gpt-4o-mini"])
        cost_in = (tokens_in / 1_000_000) * costs["input"]
        cost_out = (tokens_out / 1_000_000) * costs["output"]
        return cost_in + cost_out
