# lensroom/prompt_variants.py

import logging
from typing import List, Optional, Tuple

import commentjson

from lensroom.base_utils import BaseUtils
from lensroom.errors import ValidationError
from lensroom.llm_client import LlmClient, MaxRetryErrorsException

logger = logging.getLogger("lensroom_infer")

MAX_VARIANTS = 100

VARIANTS_PROMPT = """You are a creative AI prompt engineer. Your task is to generate diverse, high-quality variations of image generation prompts.

Generate {count} unique and diverse variations of this image generation prompt:

"{base_prompt}"

Requirements:
- Each variation should be meaningfully different but maintain the core concept
- Vary the style, mood, composition, lighting, or perspective
- Keep each prompt concise (1-2 sentences)
- Return ONLY a JSON array of strings, no additional text
- Format: ["variant 1", "variant 2", ...]

Generate exactly {count} variations."""


def suffixed_variant(base_prompt: str, index: int) -> str:
    return f"{base_prompt} (variant {index})"


class PromptVariantGenerator(BaseUtils):
    """
    Asks the text model for `count` rewrites of one base prompt (Split Grid).

    The answer is read as a JSON array; when the model wraps or breaks the
    JSON, one quoted line per variant is accepted instead. The list is padded
    with "(variant i)" suffixes or trimmed so exactly `count` come back.
    """

    def __init__(self, client: Optional[LlmClient], *, retries: int = 3):
        self.client = client
        self.retries = retries

    def generate(self, base_prompt: str, count: int) -> Tuple[List[str], bool]:
        """Returns (variants, fallback). fallback is True when the model could not be reached."""
        base_prompt = (base_prompt or "").strip()
        if not base_prompt:
            raise ValidationError("basePrompt is required")
        if isinstance(count, bool) or not isinstance(count, int) or not 1 <= count <= MAX_VARIANTS:
            raise ValidationError(f"count must be between 1 and {MAX_VARIANTS}")

        if count == 1:
            return [base_prompt], False

        logger.info("[Variants] %d variants of '%s' via %s", count, self.short(base_prompt, 50), self.client.model_name)
        try:
            text, usage = self.client.invoke(
                VARIANTS_PROMPT.format(count=count, base_prompt=base_prompt),
                temperature=0.9,
                max_tokens=2000,
                retries=self.retries,
            )
        except MaxRetryErrorsException as e:
            self.color_print(f"[Variants] Text model unavailable ({e.__cause__ or e}); using suffixed base prompt", "yellow")
            return [base_prompt] + [suffixed_variant(base_prompt, i) for i in range(2, count + 1)], True

        variants = self.parse_variants(text or "")
        if len(variants) < count:
            logger.warning("[Variants] Only got %d/%d variants, padding", len(variants), count)
            variants += [suffixed_variant(base_prompt, i) for i in range(len(variants) + 1, count + 1)]
        logger.debug("[Variants] usage=%s", usage)
        return variants[:count], False

    def parse_variants(self, text: str) -> List[str]:
        try:
            parsed = commentjson.loads(self.clean_triple_backticks(text).strip())
        except Exception:
            parsed = None
        if isinstance(parsed, list):
            return [v.strip() for v in parsed if isinstance(v, str) and v.strip()]

        logger.warning("[Variants] Answer is not a JSON array, extracting lines")
        variants = []
        for line in text.splitlines():
            line = line.strip()
            if not line or line == "," or line.startswith(("[", "]", "{", "}", "```")):
                continue
            line = line.rstrip(",").strip().strip("\"'").strip()
            if line:
                variants.append(line)
        return variants
