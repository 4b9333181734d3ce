"""
Semantic (LLM) extractor used when keyword rules cannot classify an utterance.

RESILIENCE DESIGN:
- Never lets model output escape as an exception other than a DialogueError
- Multi-stage parsing: raw JSON, then JSON embedded in text, then one repair retry
- The model is a parser only: missing fields and prompts are recomputed by
  the deterministic planner from whatever fields it returns
"""
import json
import logging
import re
from typing import Any, Dict, List, Optional

from openai import AsyncOpenAI

from transactions.lexicon import (
    BANKS,
    EWALLETS,
    PROVIDER_PREFIXES,
    find_bank,
    find_ewallet,
    find_provider,
)
from transactions.specs import (
    ACCOUNT_NUMBER,
    AMOUNT,
    BANK,
    EWALLET,
    FIELD_NAMES,
    METER_NUMBER,
    PHONE_NUMBER,
    PROVIDER,
    TransactionType,
)
from .draft import Classified, ConversationContext, ExtractionResult, Unclassified
from .errors import ExtractorUnavailableError
from .extract import DEFAULT_GOLD_PRICE_PER_GRAM, build_draft

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-4o-mini"

# Maximum chars to log from a model response on error
MAX_ERROR_LOG_CHARS = 2000

_DIGIT_FIELDS = (AMOUNT, ACCOUNT_NUMBER, PHONE_NUMBER, METER_NUMBER)
# Model spellings are mapped onto the same display names the rules produce
_NAME_FIELDS = {BANK: find_bank, EWALLET: find_ewallet, PROVIDER: find_provider}


class MalformedResponseError(ValueError):
    """Model output could not be interpreted as an extraction."""


# =============================================================================
# PROMPT
# =============================================================================

def build_context_block(text: str, context: Optional[ConversationContext]) -> str:
    """Tell the model explicitly whether a prior transaction is in progress."""
    if context is None or not context.partial_data:
        return f'Extract transaction data from this Indonesian text: "{text}"'

    partial = dict(context.partial_data)
    if context.transaction_type is not None:
        partial["type"] = context.transaction_type.value
    return f"""CONTEXT: The user previously started a transaction with partial data: {json.dumps(partial)}.
The user was asked: "{context.last_prompt or ''}"

Now the user has responded with new information: "{text}"

IMPORTANT:
- If the new input answers the question (provides the missing information), MERGE it with the previous partial data.
- If the new input is a completely different transaction command, IGNORE the previous context and process it as a new transaction.
- Decide whether the input continues the previous transaction by its content, not by turn order."""


def build_semantic_prompt(text: str, context: Optional[ConversationContext] = None) -> str:
    """
    Build the extraction prompt.

    Args:
        text: Sanitized utterance
        context: Prior context, if any

    Returns:
        The user-role prompt text
    """
    banks = ", ".join(BANKS)
    ewallets = ", ".join(EWALLETS)
    prefixes = "\n".join(
        f"- {provider}: {', '.join(codes)}" for provider, codes in PROVIDER_PREFIXES.items()
    )
    types = ", ".join(t.value for t in TransactionType)

    return f"""{build_context_block(text, context)}

Identify the transaction type and return ONLY a valid JSON object (no other text).

Transaction types: {types}. If the user asks for a different kind of transaction
(e.g. "sedekah"), still return it as "type" so it can be reported as unavailable.

Fields per type:
- transfer: amount, bank, accountNumber
- ewallet: amount, ewallet, phoneNumber
- pulsa: amount, phoneNumber, provider
- gold: amount and/or grams
- token: amount, meterNumber

NUMBER RULES:
- Amount is a plain digit string without dots/commas (e.g. "1230500", not "1.230.500")
- "ribu"/"rb"/"k" = x1000, "juta"/"jt" = x1000000, "1,5 juta" -> "1500000", "2.5jt" -> "2500000"
- Spoken compound numbers are positional, never concatenated:
  * "lima ratus satu" = 501 (NOT 5001)
  * "seribu dua ratus" = 1200
  * "satu juta dua ratus ribu" = 1200000
  * "sepuluh ribu lima ratus" = 10500
  * Pattern: [X ratus Y] = X*100 + Y, [X ribu Y] = X*1000 + Y
- Phone, account and meter numbers are digits only

SELF-CORRECTION HANDLING:
When the user corrects themselves mid-sentence, keep ONLY the last stated value for that field.
- Correction phrases: "oh maksud saya", "maksudnya", "bukan", "salah", "eh", "tunggu"
- "transfer ke BCA 029329, oh maksud saya 029229" -> accountNumber "029229"
- "100 ribu, eh 200 ribu" -> amount "200000"
- "gopay, bukan ovo" -> ewallet "OVO"

Indonesian Banks (uppercase): {banks}

E-wallets (uppercase): {ewallets}

Phone providers (uppercase), detected from the phone number prefix:
{prefixes}

OUTPUT FORMAT:
Complete command (no "message" or "incomplete" field):
{{"type": "transfer", "amount": "100000", "bank": "BCA", "accountNumber": "1234567890"}}

Incomplete command:
{{"incomplete": true, "type": "pulsa", "partialData": {{"amount": "20000"}}, "missingFields": ["phoneNumber"], "message": "Ke nomor HP berapa?"}}

If no transaction can be identified, return: {{"type": null}}"""


# =============================================================================
# RESPONSE PARSING
# =============================================================================

def extract_json_from_text(content: Optional[str]) -> Optional[str]:
    """
    Try to extract a JSON object from text that may contain other content.
    Handles cases where the model wraps output in markdown or prose.
    """
    if not content:
        return None

    patterns = [
        r'```json\s*(\{.*?\})\s*```',  # Markdown code block
        r'```\s*(\{.*?\})\s*```',       # Generic code block
        r'(\{[^{}]*(?:\{[^{}]*\}[^{}]*)*\})',  # One level of nesting
    ]

    for pattern in patterns:
        for match in re.findall(pattern, content, re.DOTALL):
            try:
                json.loads(match)
                return match
            except json.JSONDecodeError:
                continue

    first_brace = content.find('{')
    last_brace = content.rfind('}')
    if first_brace != -1 and last_brace > first_brace:
        candidate = content[first_brace:last_brace + 1]
        try:
            json.loads(candidate)
            return candidate
        except json.JSONDecodeError:
            pass

    return None


def parse_model_content(content: Optional[str]) -> Dict[str, Any]:
    """
    Parse model output into a dict: raw JSON first, then embedded JSON.

    Raises:
        MalformedResponseError: If no JSON object can be recovered
    """
    if not content:
        raise MalformedResponseError("empty response")

    for candidate in (content, extract_json_from_text(content)):
        if not candidate:
            continue
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data

    raise MalformedResponseError("no JSON object in response")


def sanitize_fields(raw: Any) -> Dict[str, str]:
    """Keep known field names with scalar values; digit fields are reduced to digits."""
    if not isinstance(raw, dict):
        raise MalformedResponseError(f"fields must be an object, got {type(raw).__name__}")

    fields: Dict[str, str] = {}
    for name in FIELD_NAMES:
        value = raw.get(name)
        if value is None or isinstance(value, (dict, list, bool)):
            continue
        text = str(value).strip()
        if name in _DIGIT_FIELDS:
            text = re.sub(r"\D", "", text)
        elif name in _NAME_FIELDS:
            text = _NAME_FIELDS[name](text) or text.upper()
        if text:
            fields[name] = text
    return fields


def interpret_response(
    data: Dict[str, Any],
    model: str,
    gold_price_per_gram: int = DEFAULT_GOLD_PRICE_PER_GRAM,
) -> ExtractionResult:
    """
    Turn a parsed model response into an ExtractionResult.

    A missing type is Unclassified; a type outside the supported set is
    Unclassified carrying the raw type so the caller can report it as
    unavailable. Field shapes are validated; missing fields are recomputed.
    """
    raw_type = data.get("type")
    if not raw_type or not isinstance(raw_type, str):
        return Unclassified(reason="model_no_type", llm_used=True)

    raw_type = raw_type.strip().lower()
    try:
        transaction_type = TransactionType(raw_type)
    except ValueError:
        logger.info(f"Model reported unsupported type: {raw_type}")
        return Unclassified(reason="model_unsupported_type", raw_type=raw_type, llm_used=True)

    if data.get("incomplete"):
        fields = sanitize_fields(data.get("partialData") or {})
    else:
        fields = sanitize_fields(data)

    draft = build_draft(transaction_type, fields, gold_price_per_gram)
    return Classified(draft=draft, llm_used=True, llm_model=model, confidence="MEDIUM")


# =============================================================================
# EXTRACTOR
# =============================================================================

class SemanticExtractor:
    """
    LLM-backed extractor.

    GUARANTEE: extract() raises only ExtractorUnavailableError. Transport
    failures and unrecoverable output both surface that way.
    """

    def __init__(
        self,
        client: Any,
        model: str = DEFAULT_MODEL,
        gold_price_per_gram: int = DEFAULT_GOLD_PRICE_PER_GRAM,
    ):
        self.client = client
        self.model = model
        self.gold_price_per_gram = gold_price_per_gram
        logger.info(f"Semantic extractor configured with model: {self.model}")

    @classmethod
    def from_api_key(
        cls,
        api_key: str,
        model: str = DEFAULT_MODEL,
        gold_price_per_gram: int = DEFAULT_GOLD_PRICE_PER_GRAM,
    ) -> "SemanticExtractor":
        return cls(AsyncOpenAI(api_key=api_key), model, gold_price_per_gram)

    async def _complete(self, messages: List[Dict[str, str]]) -> Optional[str]:
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=messages,
            temperature=0.0,
            max_tokens=500,
            response_format={"type": "json_object"},
        )
        return response.choices[0].message.content

    async def extract(
        self,
        text: str,
        context: Optional[ConversationContext] = None,
    ) -> ExtractionResult:
        """
        Extract a transaction from sanitized text.

        Args:
            text: Sanitized utterance
            context: Prior context; the prompt states explicitly whether one exists

        Returns:
            Classified or Unclassified

        Raises:
            ExtractorUnavailableError: On transport failure or malformed output
        """
        messages = [
            {"role": "system", "content": "You are a transaction extraction assistant. Output ONLY valid JSON, nothing else."},
            {"role": "user", "content": build_semantic_prompt(text, context)},
        ]

        # STAGE 1: Call the model
        try:
            raw_content = await self._complete(messages)
        except Exception as e:
            logger.error(f"METRIC extractor_api_error error={type(e).__name__}")
            raise ExtractorUnavailableError(f"model call failed: {type(e).__name__}")

        logger.debug(f"Model raw response: {raw_content[:500] if raw_content else 'None'}")

        # STAGE 2: Parse (raw, then embedded JSON)
        try:
            data = parse_model_content(raw_content)
            return interpret_response(data, self.model, self.gold_price_per_gram)
        except MalformedResponseError as e:
            logger.warning(
                f"METRIC extractor_parse_failed stage=first error={e} "
                f"content={(raw_content or '')[:MAX_ERROR_LOG_CHARS]}"
            )

        # STAGE 3: One repair retry
        repair_messages = messages + [
            {"role": "assistant", "content": "(invalid response)"},
            {"role": "user", "content": "CRITICAL: Your previous response was not valid JSON. Output ONLY the JSON object, no markdown, no explanation."},
        ]
        try:
            retry_content = await self._complete(repair_messages)
        except Exception as e:
            logger.error(f"METRIC extractor_retry_error error={type(e).__name__}")
            raise ExtractorUnavailableError(f"model retry failed: {type(e).__name__}")

        try:
            data = parse_model_content(retry_content)
            result = interpret_response(data, self.model, self.gold_price_per_gram)
        except MalformedResponseError as e:
            logger.error(f"METRIC extractor_parse_failed stage=retry error={e}")
            raise ExtractorUnavailableError(str(e))

        logger.info("METRIC extractor_parse_recovered stage=retry")
        return result
