# Copyright 2022 MIT Probabilistic Computing Project
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     https://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Completion oracles: the stochastic text-completion services which the
generative functions in this package sample from and score under.

An oracle answers two kinds of requests:

- :code:`draw(batch_size, prompt, config)` samples :code:`batch_size`
  completions of :code:`prompt`.
- :code:`rescore(batch_size, prompt, outputs, config)` returns the log
  probability of each fixed output as a completion of :code:`prompt`.

Both return a list of :code:`Completion` records, whose per-token log
probabilities have already been adjusted for the sampling temperature, and
which score the stop sequence along with the output. An output which does
not fit :code:`max_tokens` together with the stop sequence is impossible:
its score is :code:`-inf` and no request is made for it.
"""

import abc
import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import openai
import tiktoken

__all__ = [
    "EOT_TOKEN",
    "SamplingConfig",
    "Completion",
    "scale_logprobs",
    "CompletionOracle",
    "OpenAICompletionOracle",
    "MockOracle",
]

logger = logging.getLogger(__name__)

# End-of-text token of the GPT-2/GPT-3 tokenizer.
EOT_TOKEN = "<|endoftext|>"
EOT_TOKEN_ID = 50256


@dataclass(frozen=True)
class SamplingConfig:
    """
    Sampling options forwarded with every oracle request.

    - :code:`temperature`: softmax temperature. When not :code:`1.0`, the
      resulting log probabilities are no longer normalized.
    - :code:`max_tokens`: maximum number of output tokens, including the
      stop sequence.
    - :code:`stop`: stop sequence. Defaults to the end-of-text token.
    """

    temperature: float = 1.0
    max_tokens: int = 1024
    stop: Optional[str] = None


@dataclass(frozen=True)
class Completion:
    """
    A completion of a prompt. An output which cannot be generated within
    the token budget has no tokens and is marked :code:`possible=False`.
    """

    output: str
    tokens: Tuple[str, ...]
    logprobs: Tuple[float, ...]
    possible: bool = True

    @classmethod
    def impossible(cls, output: str):
        return Completion(output, (), (), possible=False)

    @property
    def score(self):
        if not self.possible:
            return -math.inf
        return sum(self.logprobs)


def scale_logprobs(logprobs: Sequence[float], temperature: float):
    """Adjust raw token log probabilities for the sampling temperature."""
    if temperature == 0.0:
        return tuple(0.0 for _ in logprobs)
    if temperature != 1.0:
        return tuple(lp / temperature for lp in logprobs)
    return tuple(logprobs)


class CompletionOracle(metaclass=abc.ABCMeta):
    @abc.abstractmethod
    def draw(
        self, batch_size: int, prompt: str, config: SamplingConfig
    ) -> List[Completion]:
        pass

    @abc.abstractmethod
    def rescore(
        self,
        batch_size: int,
        prompt: str,
        outputs: Sequence[str],
        config: SamplingConfig,
    ) -> List[Completion]:
        pass

    @abc.abstractmethod
    def count_tokens(self, text: str) -> int:
        pass

    def fits(self, output: str, config: SamplingConfig) -> bool:
        """
        Whether :code:`output` followed by the stop sequence fits in
        :code:`config.max_tokens` tokens.
        """
        n_stop = 1 if config.stop is None else self.count_tokens(config.stop)
        return self.count_tokens(output) + n_stop <= config.max_tokens


#####
# OpenAI completions endpoint
#####


@dataclass
class OpenAICompletionOracle(CompletionOracle):
    """
    Oracle backed by the OpenAI (legacy) completions endpoint.

    When no :code:`client` is given, an :code:`openai.OpenAI` client is
    constructed, which reads :code:`OPENAI_API_KEY` and
    :code:`OPENAI_ORGANIZATION` from the environment. API errors propagate
    to the caller; retries are left to the client's own configuration.

    Token budgets are checked with :code:`encoding`, by default the
    :code:`tiktoken` encoding of :code:`model`.
    """

    model: str = "davinci-002"
    client: object = None
    encoding: object = None

    def __post_init__(self):
        if self.client is None:
            self.client = openai.OpenAI()

    def _get_encoding(self):
        if self.encoding is None:
            try:
                self.encoding = tiktoken.encoding_for_model(self.model)
            except KeyError:
                self.encoding = tiktoken.get_encoding("cl100k_base")
        return self.encoding

    def count_tokens(self, text):
        return len(self._get_encoding().encode(text, allowed_special="all"))

    def _request_options(self, config: SamplingConfig):
        # A custom stop sequence is the only way to terminate, so the
        # end-of-text token is suppressed.
        logit_bias = None if config.stop is None else {str(EOT_TOKEN_ID): -100}
        return dict(
            model=self.model,
            temperature=config.temperature,
            stop=config.stop,
            logit_bias=logit_bias,
            logprobs=0,
        )

    def draw(self, batch_size, prompt, config):
        logger.debug(
            f"Requesting {batch_size} completions (prompt length {len(prompt)})"
        )
        response = self.client.completions.create(
            prompt=prompt,
            n=batch_size,
            max_tokens=config.max_tokens,
            **self._request_options(config),
        )
        choices = sorted(response.choices, key=lambda c: c.index)
        outputs = [choice.text for choice in choices]
        # The endpoint leaves the matched stop sequence out of a draw, so
        # drawn outputs are scored by `rescore`, stop sequence included.
        return self.rescore(batch_size, prompt, outputs, config)

    def rescore(self, batch_size, prompt, outputs, config):
        assert len(outputs) == batch_size
        fits = [self.fits(output, config) for output in outputs]
        feasible = [output for (output, ok) in zip(outputs, fits) if ok]
        scored = iter(self._rescore_feasible(prompt, feasible, config))
        return [
            next(scored) if ok else Completion.impossible(output)
            for (output, ok) in zip(outputs, fits)
        ]

    def _rescore_feasible(self, prompt, outputs, config):
        if not outputs:
            return []
        logger.debug(
            f"Rescoring {len(outputs)} completions (prompt length {len(prompt)})"
        )
        stop = EOT_TOKEN if config.stop is None else config.stop
        full_texts = [prompt + output + stop for output in outputs]
        response = self.client.completions.create(
            prompt=full_texts,
            max_tokens=0,
            echo=True,
            **self._request_options(config),
        )
        completions = []
        choices = sorted(response.choices, key=lambda c: c.index)
        for (output, choice) in zip(outputs, choices):
            tokens, logprobs = extract_tokens_after_prompt(choice.logprobs, prompt)
            completions.append(
                Completion(
                    output, tokens, scale_logprobs(logprobs, config.temperature)
                )
            )
        return completions


def extract_tokens_after_prompt(logprobs, prompt: str):
    """
    Keep the tokens of an echoed completion which start at or after the
    end of :code:`prompt`, along with their log probabilities.
    """
    tokens, values = [], []
    for (token, lp, offset) in zip(
        logprobs.tokens, logprobs.token_logprobs, logprobs.text_offset
    ):
        if offset < len(prompt):
            continue
        tokens.append(token)
        values.append(0.0 if lp is None else lp)
    return tuple(tokens), tuple(values)


#####
# Deterministic oracle
#####


@dataclass
class MockOracle(CompletionOracle):
    """
    Deterministic oracle; used for testing.

    Draws cycle through :code:`outputs`. Each output is tokenized into
    characters, and its token log probabilities under a prompt are read
    from :code:`table[(prompt, output)]`, defaulting to
    :code:`default_logprob` per token. Outputs which do not fit the token
    budget are impossible. Every request increments :code:`n_calls`.
    """

    outputs: Sequence[str] = ("",)
    table: Dict[Tuple[str, str], Sequence[float]] = field(default_factory=dict)
    default_logprob: float = -1.0
    n_calls: int = 0
    cursor: int = 0

    def count_tokens(self, text):
        return len(text)

    def _complete(self, prompt, output, config):
        if not self.fits(output, config):
            return Completion.impossible(output)
        tokens = tuple(output)
        logprobs = self.table.get(
            (prompt, output), [self.default_logprob] * len(tokens)
        )
        return Completion(
            output, tokens, scale_logprobs(logprobs, config.temperature)
        )

    def draw(self, batch_size, prompt, config):
        self.n_calls += 1
        completions = []
        for _ in range(batch_size):
            output = self.outputs[self.cursor % len(self.outputs)]
            self.cursor += 1
            completions.append(self._complete(prompt, output, config))
        return completions

    def rescore(self, batch_size, prompt, outputs, config):
        assert len(outputs) == batch_size
        self.n_calls += 1
        return [self._complete(prompt, output, config) for output in outputs]
