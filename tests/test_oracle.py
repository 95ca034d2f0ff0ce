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

import math
from types import SimpleNamespace

import jax
import pytest

from gensir import (
    EOT_TOKEN,
    BatchSampler,
    Completion,
    CompletionGenerativeFunction,
    ImportanceSampler,
    MockOracle,
    OpenAICompletionOracle,
    SamplingConfig,
    choice_map,
    scale_logprobs,
)
from gensir.completions.oracle import extract_tokens_after_prompt

key = jax.random.PRNGKey(314159)


class FakeCompletions:
    """Returns the queued responses in order, and records each request."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.requests = []

    def create(self, **kwargs):
        self.requests.append(kwargs)
        return self.responses.pop(0)


# One token per character.
char_encoding = SimpleNamespace(encode=lambda text, allowed_special=(): list(text))


def fake_oracle(*responses):
    choices = [SimpleNamespace(choices=list(r)) for r in responses]
    client = SimpleNamespace(completions=FakeCompletions(choices))
    return OpenAICompletionOracle(client=client, encoding=char_encoding)


def fake_choice(index, text, tokens=(), token_logprobs=(), text_offset=()):
    logprobs = SimpleNamespace(
        tokens=list(tokens),
        token_logprobs=list(token_logprobs),
        text_offset=list(text_offset),
    )
    return SimpleNamespace(index=index, text=text, logprobs=logprobs)


# Draws as returned by the endpoint: the matched stop sequence is left out
# of both the text and the log probabilities.
def drawn(index, text, logprob):
    return fake_choice(index, text, [text], [logprob], [0])


# Echoed scoring of prompt + output + stop, one token each.
def echoed(index, prompt, output, stop, output_logprob, stop_logprob):
    return fake_choice(
        index,
        prompt + output + stop,
        [prompt, output, stop],
        [None, output_logprob, stop_logprob],
        [0, len(prompt), len(prompt) + len(output)],
    )


class TestScaleLogprobs:
    def test_unit_temperature(self):
        assert scale_logprobs([-1.0, -2.0], 1.0) == (-1.0, -2.0)

    def test_temperature(self):
        assert scale_logprobs([-1.0, -2.0], 0.5) == (-2.0, -4.0)

    def test_zero_temperature(self):
        assert scale_logprobs([-1.0, -2.0], 0.0) == (0.0, 0.0)


class TestCompletion:
    def test_score(self):
        assert Completion("ab", ("a", "b"), (-1.0, -0.5)).score == -1.5
        assert Completion("", (), ()).score == 0.0

    def test_impossible(self):
        completion = Completion.impossible("abc")
        assert not completion.possible
        assert completion.tokens == ()
        assert completion.score == -math.inf


class TestOpenAICompletionOracle:
    def test_draw_scores_stop_sequence(self):
        oracle = fake_oracle(
            [drawn(1, " b", -2.0), drawn(0, " a", -1.0)],
            [
                echoed(0, "Q:", " a", "\n", -1.0, -0.5),
                echoed(1, "Q:", " b", "\n", -2.0, -0.25),
            ],
        )
        config = SamplingConfig(max_tokens=16, stop="\n")
        completions = oracle.draw(2, "Q:", config)
        assert [c.output for c in completions] == [" a", " b"]
        assert completions[0].tokens == (" a", "\n")
        assert completions[0].logprobs == (-1.0, -0.5)
        assert completions[1].score == -2.25

        draw_request, rescore_request = oracle.client.completions.requests
        assert draw_request["prompt"] == "Q:"
        assert draw_request["n"] == 2
        assert draw_request["max_tokens"] == 16
        assert draw_request["stop"] == "\n"
        assert draw_request["logit_bias"] == {"50256": -100}
        assert rescore_request["prompt"] == ["Q: a\n", "Q: b\n"]
        assert rescore_request["echo"]

    def test_draw_and_rescore_agree(self):
        config = SamplingConfig(stop="\n")
        oracle = fake_oracle(
            [drawn(0, " a", -1.0)],
            [echoed(0, "Q:", " a", "\n", -1.0, -0.5)],
            [echoed(0, "Q:", " a", "\n", -1.0, -0.5)],
        )
        (sampled,) = oracle.draw(1, "Q:", config)
        (rescored,) = oracle.rescore(1, "Q:", [" a"], config)
        assert sampled.score == rescored.score == -1.5

    def test_importance_weights_of_identical_samplers(self):
        config = SamplingConfig(stop="\n")
        oracle = fake_oracle(
            [drawn(0, " a", -1.0), drawn(1, " b", -1.0)],
            [
                echoed(0, "Q:", " a", "\n", -1.0, -0.5),
                echoed(1, "Q:", " b", "\n", -1.0, -0.5),
            ],
            [
                echoed(0, "Q:", " a", "\n", -1.0, -0.5),
                echoed(1, "Q:", " b", "\n", -1.0, -0.5),
            ],
        )
        sampler = ImportanceSampler(
            BatchSampler(oracle, config), proposal=BatchSampler(oracle, config)
        )
        _, tr = sampler.simulate(key, (2, "Q:"))
        assert tr.model_batch is not tr.proposal_batch
        assert tr.log_weights.tolist() == [0.0, 0.0]

    def test_completion_simulate_matches_generate(self):
        config = SamplingConfig(stop="\n")
        oracle = fake_oracle(
            [drawn(0, " a", -1.0)],
            [echoed(0, "Q:", " a", "\n", -1.0, -0.5)],
            [echoed(0, "Q:", " a", "\n", -1.0, -0.5)],
        )
        gen_fn = CompletionGenerativeFunction(BatchSampler(oracle, config))
        _, tr = gen_fn.simulate(key, ("Q:",))
        _, (w, new) = gen_fn.generate(key, choice_map(output=" a"), ("Q:",))
        assert float(tr.get_score()) == float(new.get_score()) == -1.5

    def test_draw_without_stop(self):
        oracle = fake_oracle(
            [drawn(0, "", -0.1)],
            [fake_choice(0, "Q:" + EOT_TOKEN, ["Q:", EOT_TOKEN], [None, -0.1], [0, 2])],
        )
        (completion,) = oracle.draw(1, "Q:", SamplingConfig())
        assert completion.tokens == (EOT_TOKEN,)
        draw_request, rescore_request = oracle.client.completions.requests
        assert draw_request["logit_bias"] is None
        assert rescore_request["prompt"] == ["Q:" + EOT_TOKEN]

    def test_rescore(self):
        oracle = fake_oracle(
            [
                fake_choice(
                    0,
                    "Hi there" + EOT_TOKEN,
                    ["Hi", " there", EOT_TOKEN],
                    [None, -1.5, -0.5],
                    [0, 2, 8],
                )
            ]
        )
        config = SamplingConfig(temperature=0.5)
        (completion,) = oracle.rescore(1, "Hi", [" there"], config)
        assert completion.output == " there"
        assert completion.tokens == (" there", EOT_TOKEN)
        assert completion.logprobs == (-3.0, -1.0)

        (request,) = oracle.client.completions.requests
        assert request["prompt"] == ["Hi there" + EOT_TOKEN]
        assert request["max_tokens"] == 0
        assert request["echo"]

    def test_rescore_too_long(self):
        oracle = fake_oracle([echoed(0, "Q:", " a", "\n", -1.0, -0.5)])
        config = SamplingConfig(max_tokens=4, stop="\n")
        short, long = oracle.rescore(2, "Q:", [" a", " abcd"], config)
        assert short.score == -1.5
        assert not long.possible
        assert long.score == -math.inf
        assert long.tokens == ()
        (request,) = oracle.client.completions.requests
        assert request["prompt"] == ["Q: a\n"]

    def test_rescore_all_too_long(self):
        oracle = fake_oracle()
        config = SamplingConfig(max_tokens=2)
        (completion,) = oracle.rescore(1, "Q:", [" abc"], config)
        assert completion.score == -math.inf
        assert oracle.client.completions.requests == []

    def test_rescore_length_mismatch(self):
        oracle = fake_oracle()
        with pytest.raises(AssertionError):
            oracle.rescore(2, "Hi", [" there"], SamplingConfig())


class TestExtractTokens:
    def test_skips_prompt_tokens(self):
        logprobs = SimpleNamespace(
            tokens=["A", "B", "C"],
            token_logprobs=[None, -1.0, -2.0],
            text_offset=[0, 1, 2],
        )
        assert extract_tokens_after_prompt(logprobs, "AB") == (("C",), (-2.0,))


class TestMockOracle:
    def test_draw_cycles(self):
        oracle = MockOracle(outputs=("a", "bb"))
        completions = oracle.draw(3, "p", SamplingConfig())
        assert [c.output for c in completions] == ["a", "bb", "a"]
        assert completions[1].tokens == ("b", "b")
        assert completions[1].logprobs == (-1.0, -1.0)
        assert oracle.n_calls == 1

    def test_rescore_uses_table(self):
        oracle = MockOracle(table={("p", "a"): [-0.25]})
        config = SamplingConfig(temperature=0.5)
        (completion,) = oracle.rescore(1, "p", ["a"], config)
        assert completion.logprobs == (-0.5,)
        (completion,) = oracle.rescore(1, "q", ["a"], config)
        assert completion.logprobs == (-2.0,)
        assert oracle.n_calls == 2

    def test_token_budget(self):
        oracle = MockOracle(outputs=("ab", "abc"))
        config = SamplingConfig(max_tokens=3)
        fits, too_long = oracle.draw(2, "p", config)
        assert fits.score == -2.0
        assert too_long.score == -math.inf
