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
A single completion of a prompt, as a generative function with one
address, :code:`"output"`.
"""

from dataclasses import dataclass
from typing import Any, Tuple

from gensir.completions.batch import BatchSampler
from gensir.core.datatypes import (
    OUTPUT_ADDR,
    EmptyChoiceMap,
    GenerativeFunction,
    NoChange,
    Trace,
    UnknownChange,
    choice_map,
)

__all__ = [
    "CompletionTrace",
    "CompletionGenerativeFunction",
]


def _extract_prompt(args: Tuple):
    if len(args) == 0:
        return ""
    elif len(args) == 1:
        return args[0]
    else:
        raise Exception("Expected 0 or 1 arguments to CompletionGenerativeFunction")


@dataclass(frozen=True, eq=False)
class CompletionTrace(Trace):
    gen_fn: "CompletionGenerativeFunction"
    prompt: str
    output: str
    tokens: Tuple[str, ...]
    logprobs: Any
    score: Any

    def flatten(self):
        return (self.logprobs, self.score), (
            self.gen_fn,
            self.prompt,
            self.output,
            self.tokens,
        )

    @classmethod
    def unflatten(cls, xs, data):
        gen_fn, prompt, output, tokens = xs
        logprobs, score = data
        return CompletionTrace(gen_fn, prompt, output, tokens, logprobs, score)

    def get_gen_fn(self):
        return self.gen_fn

    def get_args(self):
        return (self.prompt,)

    def get_retval(self):
        return self.output

    def get_score(self):
        return self.score

    def get_choices(self):
        return choice_map({OUTPUT_ADDR: self.output})

    def project(self, selection):
        if OUTPUT_ADDR in selection:
            return self.score
        return 0.0


@dataclass(eq=False)
class CompletionGenerativeFunction(GenerativeFunction):
    """
    Samples one completion of :code:`prompt` from a :code:`BatchSampler`.
    The score of a trace is the log probability of its output under the
    sampler's oracle and configuration.
    """

    sampler: BatchSampler

    def flatten(self):
        return (), (self.sampler,)

    def _trace(self, prompt, batch):
        return CompletionTrace(
            self,
            prompt,
            batch.outputs[0],
            batch.tokens[0],
            batch.logprobs[0],
            batch.scores[0],
        )

    def _rescore(self, prompt, output):
        batch = self.sampler.rescore(1, prompt, [output])
        return self._trace(prompt, batch)

    def simulate(self, key, args):
        prompt = _extract_prompt(args)
        batch = self.sampler.draw(1, prompt)
        return key, self._trace(prompt, batch)

    def generate(self, key, chm, args):
        prompt = _extract_prompt(args)
        if chm.has_choice(OUTPUT_ADDR) and chm[OUTPUT_ADDR] is not None:
            trace = self._rescore(prompt, chm[OUTPUT_ADDR])
            return key, (trace.get_score(), trace)
        key, trace = self.simulate(key, args)
        return key, (0.0, trace)

    # Keep the previous output, under a possibly new prompt.
    def _retain(self, key, prev, prompt):
        if prompt == prev.prompt:
            return key, (0.0, prev, NoChange, EmptyChoiceMap())
        trace = self._rescore(prompt, prev.output)
        weight = trace.get_score() - prev.get_score()
        return key, (weight, trace, NoChange, EmptyChoiceMap())

    def update(self, key, prev, new, args):
        prompt = _extract_prompt(args)
        if new.is_empty():
            return self._retain(key, prev, prompt)
        if not new.has_choice(OUTPUT_ADDR):
            raise Exception("Did not visit all constraints")
        output = new[OUTPUT_ADDR]
        if output is None:
            return self._retain(key, prev, prompt)
        if prompt == prev.prompt and output == prev.output:
            return key, (0.0, prev, NoChange, EmptyChoiceMap())
        trace = self._rescore(prompt, output)
        weight = trace.get_score() - prev.get_score()
        return key, (weight, trace, UnknownChange, prev.get_choices())

    def regenerate(self, key, prev, selection, args):
        prompt = _extract_prompt(args)
        if OUTPUT_ADDR not in selection:
            key, (weight, trace, retdiff, _) = self._retain(key, prev, prompt)
            return key, (weight, trace, retdiff)
        key, trace = self.simulate(key, args)
        return key, (0.0, trace, UnknownChange)
