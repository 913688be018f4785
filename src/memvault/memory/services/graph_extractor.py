"""LLM-backed extraction of knowledge graphs and consolidation facts."""

import json
import logging
import re
from abc import ABC, abstractmethod
from typing import Any

import openai
from openai import AsyncOpenAI
from pydantic import ValidationError as PydanticValidationError
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ...core.config import Settings, settings as default_settings
from ...core.domain.graph import (
    CoreFact,
    CoreFactExtraction,
    ExtractedEntity,
    ExtractedRelationship,
    GraphExtractionResult,
    Memory,
    TokenUsage,
)
from ...core.errors import ExtractionError

logger = logging.getLogger(__name__)


GRAPH_EXTRACTION_PROMPT = """You are a knowledge graph extraction expert. Extract entities and relationships from the given text.

Rules:
1. Identify ENTITIES: People, Products, Locations, Organizations, Concepts, Technologies
2. Identify RELATIONSHIPS: How entities relate to each other (OWNS, LIKES, WORKS_AT, LOCATED_IN, USES, BOUGHT, etc.)
3. Use UPPERCASE for entity types and predicates
4. Keep entity names exactly as they appear in the text
5. Only extract explicit relationships, not inferred ones

Return ONLY valid JSON in this exact format:
{
  "entities": [
    {"name": "John Doe", "type": "PERSON", "description": "A user"},
    {"name": "iPhone 15", "type": "PRODUCT", "description": "A smartphone"}
  ],
  "relationships": [
    {"from": "John Doe", "to": "iPhone 15", "predicate": "BOUGHT"}
  ]
}"""


CONSOLIDATION_PROMPT = """You are a memory consolidation AI. Your job is to analyze a user's recent memories and extract core facts that should be permanently stored in their knowledge graph.

Guidelines:
1. Identify key entities (people, projects, events, concepts)
2. Extract lasting facts (not temporary states)
3. Merge redundant information
4. Assign confidence scores (0.0-1.0)
5. Use the same entity names and UPPERCASE types used at extraction time

Output format (JSON object):
{
  "facts": [
    {
      "entityName": "EntityName",
      "entityType": "PERSON",
      "fact": "Clear, concise fact about the entity",
      "confidence": 0.95
    }
  ]
}

Only output valid JSON. No explanations."""


class GraphExtractionProvider(ABC):
    """Narrow interface over the LLM used for extraction and summarization."""

    @abstractmethod
    async def extract_graph(self, text: str) -> GraphExtractionResult:
        """Extract entities and relationships from a statement.

        Raises:
            ExtractionError: If the provider fails or returns malformed output
        """
        pass

    @abstractmethod
    async def extract_core_facts(self, memories: list[Memory]) -> CoreFactExtraction:
        """Summarize a batch of memories into entity-level facts.

        Raises:
            ExtractionError: If the provider fails or returns malformed output
        """
        pass

    async def __aenter__(self) -> "GraphExtractionProvider":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        pass


def parse_json_response(content: str) -> Any:
    """Parse an LLM JSON response, tolerating surrounding prose."""
    try:
        return json.loads(content)
    except json.JSONDecodeError:
        json_match = re.search(r"\{.*\}", content, re.DOTALL)
        if json_match:
            try:
                return json.loads(json_match.group())
            except json.JSONDecodeError:
                pass
        raise ExtractionError("Could not parse LLM response as JSON")


def parse_graph_payload(data: Any) -> tuple[list[ExtractedEntity], list[ExtractedRelationship]]:
    """Validate the extraction payload shape and convert it to domain objects."""
    if not isinstance(data, dict):
        raise ExtractionError("Invalid graph extraction response format")

    raw_entities = data.get("entities") or []
    raw_relationships = data.get("relationships") or []
    if not isinstance(raw_entities, list) or not isinstance(raw_relationships, list):
        raise ExtractionError("Invalid graph extraction response format")

    entities = []
    for item in raw_entities:
        try:
            entities.append(ExtractedEntity.model_validate(item))
        except PydanticValidationError as e:
            logger.warning(f"Dropping malformed entity {item!r}: {e.error_count()} errors")

    relationships = []
    for item in raw_relationships:
        try:
            relationships.append(ExtractedRelationship.model_validate(item))
        except PydanticValidationError as e:
            logger.warning(f"Dropping malformed relationship {item!r}: {e.error_count()} errors")

    return entities, relationships


def parse_fact_payload(data: Any) -> list[CoreFact]:
    """Accept {"facts": [...]}, {"coreFacts": [...]} or a bare list."""
    if isinstance(data, dict):
        data = data.get("facts", data.get("coreFacts", []))
    if not isinstance(data, list):
        return []

    facts = []
    for item in data:
        try:
            facts.append(CoreFact.model_validate(item))
        except PydanticValidationError:
            logger.warning(f"Dropping malformed fact {item!r}")
    return facts


class OpenAIGraphExtractor(GraphExtractionProvider):
    """Graph extraction through OpenAI chat completions in JSON mode."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or default_settings
        self.model = self.settings.llm_model
        self.client: AsyncOpenAI | None = None

    async def __aenter__(self) -> "OpenAIGraphExtractor":
        if not self.settings.openai_api_key:
            raise ExtractionError("OpenAI API key is required for graph extraction")

        self.client = AsyncOpenAI(
            api_key=self.settings.openai_api_key,
            timeout=self.settings.provider_timeout,
        )
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if self.client:
            await self.client.close()
            self.client = None

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type(openai.RateLimitError),
        reraise=True,
    )
    async def _complete_json(
        self, system_prompt: str, user_prompt: str, temperature: float
    ) -> tuple[str, TokenUsage | None]:
        """Run a JSON-mode chat completion, retrying on rate limits."""
        if not self.client:
            raise ExtractionError("Client not initialized - use async context manager")

        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                temperature=temperature,
                response_format={"type": "json_object"},
            )
        except openai.RateLimitError:
            logger.warning("OpenAI API rate limit hit, retrying...")
            raise
        except openai.OpenAIError as e:
            logger.error(f"OpenAI completion failed: {str(e)}")
            raise ExtractionError(f"OpenAI API error: {str(e)}") from e

        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise ExtractionError("No response from LLM")

        usage = None
        if response.usage:
            usage = TokenUsage(
                prompt_tokens=response.usage.prompt_tokens,
                completion_tokens=response.usage.completion_tokens,
                total_tokens=response.usage.total_tokens,
            )
        return content, usage

    async def _complete(
        self, system_prompt: str, user_prompt: str, temperature: float
    ) -> tuple[str, TokenUsage | None]:
        try:
            return await self._complete_json(system_prompt, user_prompt, temperature)
        except openai.RateLimitError as e:
            raise ExtractionError(f"OpenAI rate limit: {str(e)}") from e

    async def extract_graph(self, text: str) -> GraphExtractionResult:
        """Extract entities and relationships from text using the LLM."""
        content, usage = await self._complete(GRAPH_EXTRACTION_PROMPT, text, temperature=0.1)
        entities, relationships = parse_graph_payload(parse_json_response(content))

        logger.debug(
            f"Extracted {len(entities)} entities and {len(relationships)} relationships"
        )
        return GraphExtractionResult(
            entities=entities,
            relationships=relationships,
            usage=usage,
        )

    async def extract_core_facts(self, memories: list[Memory]) -> CoreFactExtraction:
        """Consolidate memories into lasting entity facts."""
        if not memories:
            return CoreFactExtraction()

        memory_texts = "\n".join(
            f"[{idx}] (importance: {m.importance_score:.2f}) {m.text}"
            for idx, m in enumerate(memories, 1)
        )
        user_prompt = (
            f"Consolidate these {len(memories)} memories into core facts:\n\n"
            f"{memory_texts}\n\n"
            "Extract lasting facts about entities. "
            "Focus on important information (importance > 0.6)."
        )

        content, usage = await self._complete(CONSOLIDATION_PROMPT, user_prompt, temperature=0.3)
        facts = parse_fact_payload(parse_json_response(content))
        return CoreFactExtraction(facts=facts, usage=usage)
