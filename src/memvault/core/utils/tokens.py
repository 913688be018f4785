"""Token estimation utilities used for cost metering and context sizing."""

import math

# Rough estimate: 1 token is about 4 characters of English text
CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    """Estimate the token count of a text string."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def calculate_cost(
    token_count: int,
    *,
    cost_per_million_tokens: float,
    embedding_cost_per_million_tokens: float,
    graph_extraction_multiplier: float,
    profit_margin: float,
    has_embedding: bool = False,
    has_graph_extraction: bool = False,
) -> int:
    """Price an operation in cents, rounded up to the nearest cent.

    Args:
        token_count: Estimated or measured token count
        cost_per_million_tokens: Base LLM rate in cents
        embedding_cost_per_million_tokens: Embedding rate in cents
        graph_extraction_multiplier: Factor applied for structured extraction
        profit_margin: Factor applied last
        has_embedding: Whether an embedding is generated
        has_graph_extraction: Whether graph extraction runs

    Returns:
        Cost in cents
    """
    cost = (token_count / 1_000_000) * cost_per_million_tokens

    if has_embedding:
        cost += (token_count / 1_000_000) * embedding_cost_per_million_tokens

    if has_graph_extraction:
        cost *= graph_extraction_multiplier

    cost *= profit_margin

    return math.ceil(cost)
