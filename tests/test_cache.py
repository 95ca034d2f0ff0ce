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

from gensir import TraceCache


class TestTraceCache:
    def test_get_missing(self):
        cache = TraceCache()
        assert cache.get((1, "m", "p")) is None
        assert (1, "m", "p") not in cache

    def test_get_or_insert(self):
        cache = TraceCache()
        calls = []

        def thunk():
            calls.append(None)
            return "trace"

        assert cache.get_or_insert((1, "m", "p"), thunk) == "trace"
        assert cache.get_or_insert((1, "m", "p"), thunk) == "trace"
        assert len(calls) == 1
        assert len(cache) == 1

    def test_put_and_clear(self):
        cache = TraceCache({(1, "m", "p"): "old"})
        cache.put((1, "m", "p"), "new")
        assert cache.get((1, "m", "p")) == "new"
        cache.clear()
        assert len(cache) == 0
