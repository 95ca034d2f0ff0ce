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

import jax.numpy as jnp
import pytest

from gensir import BatchSampler, BatchTrace, Completion, MockOracle


class TestBatchTrace:
    def test_new(self):
        batch = BatchTrace.new(
            [
                Completion("ab", ("a", "b"), (-1.0, -0.5)),
                Completion("", (), ()),
            ]
        )
        assert len(batch) == 2
        assert batch.outputs == ("ab", "")
        assert batch.tokens == (("a", "b"), ())
        assert float(batch.scores[0]) == pytest.approx(-1.5)
        assert float(batch.scores[1]) == 0.0

    def test_concat(self):
        first = BatchTrace.new([Completion("a", ("a",), (-1.0,))])
        second = BatchTrace.new([Completion("b", ("b",), (-2.0,))])
        batch = BatchTrace.empty().concat(first).concat(second)
        assert len(batch) == 2
        assert batch.outputs == ("a", "b")
        assert list(batch.scores) == [-1.0, -2.0]
        assert len(first) == 1

    def test_mismatched_lengths(self):
        with pytest.raises(AssertionError):
            BatchTrace((), jnp.zeros(1), ("a",), (("a",),))


class TestBatchSampler:
    def test_draw(self):
        oracle = MockOracle(outputs=("a", "b"))
        sampler = BatchSampler(oracle)
        batch = sampler.draw(2, "p")
        assert batch.outputs == ("a", "b")
        assert oracle.n_calls == 1

    def test_rescore(self):
        oracle = MockOracle(table={("p", "b"): [-3.0]})
        sampler = BatchSampler(oracle)
        batch = sampler.rescore(2, "p", ["a", "b"])
        assert list(batch.scores) == [-1.0, -3.0]

    def test_rescore_length_mismatch(self):
        sampler = BatchSampler(MockOracle())
        with pytest.raises(AssertionError):
            sampler.rescore(3, "p", ["a", "b"])
