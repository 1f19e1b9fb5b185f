"""
Token usage extraction from provider responses.

Responses are read by duck typing, as SDK objects or plain dicts, so no
provider SDK needs to be installed. Anything missing counts as zero tokens.
"""
import math
from collections.abc import Mapping
from typing import Any, Optional, Tuple, Union

from lib.request_tracer.models import Provider

# provider -> (usage attribute, input tokens attribute, output tokens attribute)
USAGE_FIELDS = {
    Provider.OPENAI: ('usage', 'prompt_tokens', 'completion_tokens'),
    Provider.MISTRAL: ('usage', 'prompt_tokens', 'completion_tokens'),
    Provider.ANTHROPIC: ('usage', 'input_tokens', 'output_tokens'),
    Provider.GOOGLE: ('usage_metadata', 'prompt_token_count', 'candidates_token_count'),
}


def _read(source: Any, name: str) -> Any:
    if source is None:
        return None
    if isinstance(source, Mapping):
        return source.get(name)
    return getattr(source, name, None)


def _as_token_count(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    if isinstance(value, float) and not math.isfinite(value):
        return 0
    return int(value)


def extract_usage(provider: Union[Provider, str], response: Any) -> Tuple[int, int]:
    """
    Read (input_tokens, output_tokens) from a provider response.

    Args:
        provider: Provider that produced the response
        response: SDK response object or dict

    Returns:
        Token counts, (0, 0) when the response carries no usage
    """
    if response is None:
        return 0, 0

    try:
        fields: Optional[Tuple[str, str, str]] = USAGE_FIELDS.get(Provider(provider))
    except ValueError:
        fields = None

    candidates = [fields] if fields else list(dict.fromkeys(USAGE_FIELDS.values()))
    for usage_attr, input_attr, output_attr in candidates:
        usage = _read(response, usage_attr)
        if usage is None:
            continue
        input_tokens = _as_token_count(_read(usage, input_attr))
        output_tokens = _as_token_count(_read(usage, output_attr))
        if input_tokens or output_tokens or fields:
            return input_tokens, output_tokens

    return 0, 0
