"""
HuggingFace Client - Local causal LM for field extraction

Responsibilities:
- Load tokenizer and model (NF4 4-bit on CUDA when requested)
- Produce deterministic completions for extraction prompts
- Cut LLM output down to the JSON object or array it contains

Design principles:
- Injected into FieldExtractor (no singleton, no module-level model)
- Loading errors propagate; the server cannot extract without a model
- generate_json() returns a string; parsing belongs to the caller
"""

import time
import logging
from typing import Optional

import torch
from transformers import (
    AutoModelForCausalLM,
    AutoTokenizer,
    BitsAndBytesConfig
)

logger = logging.getLogger(__name__)

DEVICE_CUDA = "cuda"
DEVICE_CPU = "cpu"

# Extraction replies are short JSON documents
DEFAULT_MAX_TOKENS = 256

_CLOSERS = {'{': '}', '[': ']'}


def build_quantization_config(load_in_4bit: bool, device: str) -> Optional[BitsAndBytesConfig]:
    """NF4 config for CUDA 4-bit loading, else None (bitsandbytes is CUDA only)."""
    if not load_in_4bit or device != DEVICE_CUDA:
        return None
    return BitsAndBytesConfig(
        load_in_4bit=True,
        bnb_4bit_quant_type="nf4",
        bnb_4bit_compute_dtype=torch.bfloat16,
        bnb_4bit_use_double_quant=True
    )


class HuggingFaceClient:
    """Extraction model wrapper exposing is_loaded(), generate() and generate_json()"""

    def __init__(
        self,
        model_name: str,
        load_in_4bit: bool = True,
        device: str = DEVICE_CUDA,
        use_chat_template: bool = True
    ) -> None:
        """
        Args:
            model_name: HuggingFace model identifier (see goalflow.config.get_model_name)
            load_in_4bit: Quantize to 4-bit on CUDA (needs the quantization extra)
            device: "cuda" or "cpu"
            use_chat_template: Wrap prompts as a single user turn when the
                tokenizer ships a chat template

        Raises:
            RuntimeError: If CUDA is requested but not available
            torch.cuda.OutOfMemoryError: If the model does not fit
        """
        if device not in (DEVICE_CUDA, DEVICE_CPU):
            raise ValueError(f"Unsupported device '{device}'")
        if device == DEVICE_CUDA and not torch.cuda.is_available():
            raise RuntimeError("CUDA requested but not available. Check nvidia-smi.")

        self.model_name = model_name
        self.device = device
        self.use_chat_template = use_chat_template

        logger.info(f"Loading extraction model {model_name} on {device} (4-bit: {load_in_4bit})")
        self.tokenizer = self._load_tokenizer(model_name)
        self.model = self._load_model(model_name, build_quantization_config(load_in_4bit, device))
        self.model.eval()
        logger.info("Extraction model ready")

    @staticmethod
    def _load_tokenizer(model_name: str):
        tokenizer = AutoTokenizer.from_pretrained(model_name)
        if tokenizer.pad_token is None:
            if tokenizer.eos_token is not None:
                tokenizer.pad_token = tokenizer.eos_token
            else:
                tokenizer.add_special_tokens({'pad_token': '[PAD]'})
                logger.warning("Tokenizer has no eos token; added [PAD]")
        return tokenizer

    def _load_model(self, model_name: str, quantization_config):
        on_cuda = self.device == DEVICE_CUDA
        try:
            model = AutoModelForCausalLM.from_pretrained(
                model_name,
                quantization_config=quantization_config,
                device_map="auto" if on_cuda else None,
                torch_dtype=torch.bfloat16 if on_cuda else torch.float32
            )
        except torch.cuda.OutOfMemoryError:
            logger.error(f"CUDA out of memory loading {model_name}")
            raise

        if on_cuda:
            allocated = torch.cuda.memory_allocated() / 1e9
            logger.info(f"GPU memory after load: {allocated:.2f}GB allocated")
        return model

    def is_loaded(self) -> bool:
        return self.model is not None and self.tokenizer is not None

    def _as_model_input(self, prompt: str) -> str:
        if not self.use_chat_template or not getattr(self.tokenizer, 'chat_template', None):
            return prompt
        return self.tokenizer.apply_chat_template(
            [{"role": "user", "content": prompt}],
            tokenize=False,
            add_generation_prompt=True
        )

    def generate(self, prompt: str, max_tokens: int = DEFAULT_MAX_TOKENS,
                 temperature: float = 0.0) -> str:
        """
        Complete a prompt.

        Temperature 0 means greedy decoding, which is what extraction wants:
        the same message always yields the same candidates.

        Raises:
            RuntimeError: If the model is not loaded
            torch.cuda.OutOfMemoryError: If generation runs out of GPU memory
        """
        if not self.is_loaded():
            raise RuntimeError("Model not loaded")

        started = time.time()
        inputs = self.tokenizer(self._as_model_input(prompt), return_tensors="pt")
        if self.device == DEVICE_CUDA:
            inputs = inputs.to(DEVICE_CUDA)
        prompt_tokens = inputs.input_ids.shape[1]

        sampling = temperature > 0
        try:
            with torch.no_grad():
                outputs = self.model.generate(
                    inputs.input_ids,
                    attention_mask=inputs.attention_mask,
                    max_new_tokens=max_tokens,
                    do_sample=sampling,
                    temperature=temperature if sampling else None,
                    pad_token_id=self.tokenizer.pad_token_id
                )
        except torch.cuda.OutOfMemoryError:
            logger.error(f"CUDA OOM during generation ({prompt_tokens} prompt tokens, {max_tokens} new)")
            raise

        text = self.tokenizer.decode(outputs[0][prompt_tokens:], skip_special_tokens=True)
        logger.debug(f"Generated {len(text)} chars in {(time.time() - started) * 1000:.0f}ms")
        return text

    def generate_json(self, prompt: str, max_tokens: int = DEFAULT_MAX_TOKENS,
                      temperature: float = 0.0) -> str:
        """
        Complete a prompt that asks for JSON and return the repaired text.

        Caller must json.loads() the result; it may still be invalid.
        """
        return repair_json(self.generate(prompt, max_tokens=max_tokens, temperature=temperature))


def repair_json(text: str) -> str:
    """
    Cut LLM output down to its JSON document.

    Strips markdown fences and keeps the first object or array. Closers
    are appended when the output was truncated. Brackets inside strings
    are not accounted for.

    Examples:
        >>> repair_json('```json\\n{"a": 1}\\n```')
        '{"a": 1}'
        >>> repair_json('Here you go: [{"field": "email"')
        '[{"field": "email"}]'
    """
    text = text.strip()
    if text.startswith("```"):
        text = text[3:]
        if text.startswith("json"):
            text = text[4:]
    if text.endswith("```"):
        text = text[:-3]
    text = text.strip()

    starts = [i for i in (text.find('{'), text.find('[')) if i != -1]
    if not starts:
        logger.warning("No JSON document found in LLM output")
        return text

    text = text[min(starts):]

    # Stop where the first document closes; trailing chatter and stray closers are dropped
    stack = []
    for index, char in enumerate(text):
        if char in _CLOSERS:
            stack.append(_CLOSERS[char])
        elif stack and char == stack[-1]:
            stack.pop()
            if not stack:
                return text[:index + 1]

    # Truncated output: close whatever is still open, innermost first
    logger.debug(f"Appending {len(stack)} missing closers")
    return text + ''.join(reversed(stack))
