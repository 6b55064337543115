"""
Parler-TTS Engine.

Parler-TTS generates speech from two inputs: the prompt to speak and a
natural-language description of the voice ("A female speaker with a calm,
slightly low-pitched voice, recorded close to the microphone.").

Pipeline:
    1. Tokenize description and prompt separately with the model tokenizer
    2. Seed torch's RNG with the request seed
    3. model.generate() with sampling (temperature, top_p), capped at
       max_new_tokens decoder steps
    4. The audio codec decodes the codes to a float32 waveform at the
       model's sampling rate

Sampling:
    temperature == 0 switches to greedy decoding; top_p is ignored then.

Cancellation:
    A StoppingCriteria polls the job's cancel event between decoder steps,
    so a cancelled or timed-out job stops within one step instead of running
    to max_new_tokens.

Configuration:
    settings.yaml:
        engine:
          type: parler
          model_id: parler-tts/parler-tts-large-v1
          revision: main
          max_new_tokens: 512
          dtype: float32

Installation:
    pip install "parler-serve[parler]"

See Also:
    - https://huggingface.co/parler-tts/parler-tts-large-v1
    - https://github.com/huggingface/parler-tts
"""
from __future__ import annotations

import threading
from typing import Any, Dict, Optional

import numpy as np

from parler_serve.core.config import EngineConfig
from parler_serve.core.device import DeviceProfile
from parler_serve.core.errors import EngineFailure, GenerationCancelled
from parler_serve.core.logging import info, verbose
from parler_serve.tts.engine import AudioResult, GenerationRequest, SynthesisEngine
from parler_serve.utils.timeit import timeit


class ParlerEngine(SynthesisEngine):
    """Parler-TTS text + description to speech."""

    name = "parler"

    def __init__(self, config: Optional[EngineConfig] = None):
        super().__init__(config)
        self._model = None
        self._tokenizer = None
        self._torch = None
        self._device = "cpu"

    def load(self, profile: DeviceProfile) -> None:
        """Pull weights from the hub and move the model to the selected device."""
        if self._loaded:
            return

        try:
            import torch
            from parler_tts import ParlerTTSForConditionalGeneration
            from transformers import AutoTokenizer
        except ImportError as exc:
            raise RuntimeError(
                "Parler-TTS dependencies missing. Install with: pip install \"parler-serve[parler]\""
            ) from exc

        self._torch = torch
        self._device = profile.torch_device
        dtype = getattr(torch, self.config.dtype)
        info(self.logger, "loading model", model=self.model_id, revision=self.config.revision,
             device=self._device, dtype=self.config.dtype)

        with timeit("load_tokenizer") as t_tok:
            self._tokenizer = AutoTokenizer.from_pretrained(self.model_id, revision=self.config.revision)
        verbose(self.logger, "tokenizer loaded", seconds=t_tok.seconds)

        with timeit("load_model") as t_model:
            model = ParlerTTSForConditionalGeneration.from_pretrained(
                self.model_id,
                revision=self.config.revision,
                torch_dtype=dtype,
            )
            self._model = model.to(self._device)
            self._model.eval()
        verbose(self.logger, "weights loaded", seconds=t_model.seconds)

        self.sample_rate = int(self._model.config.sampling_rate)
        info(self.logger, "model loaded", sample_rate=self.sample_rate,
             seconds=t_tok.seconds + t_model.seconds)
        self._loaded = True

    def generate(self, request: GenerationRequest, cancel_event: threading.Event) -> AudioResult:
        if self._model is None or self._tokenizer is None:
            raise EngineFailure("Parler model not loaded")

        torch = self._torch
        timings: Dict[str, float] = {}

        with timeit("tokenize") as t_tok:
            description = self._tokenizer(request.description, return_tensors="pt").to(self._device)
            prompt = self._tokenizer(request.text, return_tensors="pt").to(self._device)
        timings["tokenize"] = t_tok.seconds

        torch.manual_seed(request.seed)

        kwargs: Dict[str, Any] = {
            "input_ids": description.input_ids,
            "attention_mask": description.attention_mask,
            "prompt_input_ids": prompt.input_ids,
            "prompt_attention_mask": prompt.attention_mask,
            "max_new_tokens": self.config.max_new_tokens,
            "stopping_criteria": _cancel_criteria(cancel_event),
        }
        if request.temperature > 0.0:
            kwargs.update(do_sample=True, temperature=request.temperature, top_p=request.top_p)
        else:
            kwargs["do_sample"] = False

        with timeit("decode") as t_gen:
            with torch.inference_mode():
                generation = self._model.generate(**kwargs)
        timings["decode"] = t_gen.seconds

        if cancel_event.is_set():
            raise GenerationCancelled()

        samples = generation.to(torch.float32).cpu().numpy().squeeze()
        samples = np.asarray(samples, dtype=np.float32)
        if samples.ndim != 1:
            raise EngineFailure(f"Unexpected Parler output shape {samples.shape}")

        verbose(self.logger, "generation done", frames=samples.shape[0], seed=request.seed,
                seconds=timings["decode"])
        return AudioResult(samples=samples, sample_rate=self.sample_rate, channels=1, timings_s=timings)


def _cancel_criteria(cancel_event: threading.Event):
    """StoppingCriteriaList that halts generation once cancel_event is set."""
    import torch
    from transformers import StoppingCriteria, StoppingCriteriaList

    class _CancelCriteria(StoppingCriteria):
        def __call__(self, input_ids, scores, **kwargs):
            return torch.full(
                (input_ids.shape[0],), cancel_event.is_set(), dtype=torch.bool, device=input_ids.device
            )

    return StoppingCriteriaList([_CancelCriteria()])
