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
Batches of completions: the :code:`BatchTrace` datatype and the
:code:`BatchSampler`, which fills batches by sampling from (or scoring
under) a completion oracle.
"""

from dataclasses import dataclass, field
from typing import Sequence, Tuple

import jax.numpy as jnp

from gensir.completions.oracle import CompletionOracle, SamplingConfig
from gensir.core.pytree import Pytree

__all__ = [
    "BatchTrace",
    "BatchSampler",
]

#####
# BatchTrace
#####


@dataclass(frozen=True, eq=False)
class BatchTrace(Pytree):
    """
    An immutable batch of :code:`n` completions. Member :code:`i` is
    described by :code:`outputs[i]`, :code:`tokens[i]`,
    :code:`logprobs[i]` (one log probability per token) and
    :code:`scores[i]` (their sum).
    """

    logprobs: Tuple
    scores: jnp.ndarray
    outputs: Tuple[str, ...]
    tokens: Tuple[Tuple[str, ...], ...]

    def __post_init__(self):
        n = len(self.outputs)
        assert len(self.tokens) == n
        assert len(self.logprobs) == n
        assert len(self.scores) == n

    def flatten(self):
        return (self.logprobs, self.scores), (self.outputs, self.tokens)

    @classmethod
    def new(cls, completions):
        outputs = tuple(c.output for c in completions)
        tokens = tuple(tuple(c.tokens) for c in completions)
        logprobs = tuple(jnp.array(c.logprobs) for c in completions)
        scores = jnp.array([c.score for c in completions])
        return BatchTrace(logprobs, scores, outputs, tokens)

    @classmethod
    def empty(cls):
        return BatchTrace((), jnp.zeros((0,)), (), ())

    def __len__(self):
        return len(self.outputs)

    def concat(self, other: "BatchTrace"):
        """Return a new batch with the members of `other` appended."""
        return BatchTrace(
            self.logprobs + other.logprobs,
            jnp.concatenate([self.scores, other.scores]),
            self.outputs + other.outputs,
            self.tokens + other.tokens,
        )


#####
# BatchSampler
#####


@dataclass(eq=False)
class BatchSampler:
    """
    Wraps a :code:`CompletionOracle` and a :code:`SamplingConfig`. Each
    method issues exactly one oracle request; errors raised by the
    oracle propagate unchanged.
    """

    oracle: CompletionOracle
    config: SamplingConfig = field(default_factory=SamplingConfig)

    def draw(self, n: int, prompt: str) -> BatchTrace:
        completions = self.oracle.draw(n, prompt, self.config)
        assert len(completions) == n
        return BatchTrace.new(completions)

    def rescore(self, n: int, prompt: str, outputs: Sequence[str]) -> BatchTrace:
        assert len(outputs) == n
        completions = self.oracle.rescore(n, prompt, list(outputs), self.config)
        assert len(completions) == n
        return BatchTrace.new(completions)
