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

import logging
from typing import Callable, Dict, Optional, Tuple

__all__ = [
    "TraceCache",
]

logger = logging.getLogger(__name__)

CacheKey = Tuple[int, str, str]


class TraceCache:
    """
    A store of importance sampler traces, keyed by
    :code:`(n_samples, model_prompt, proposal_prompt)`.

    Traces are immutable, so a stored trace may be handed out to any
    number of readers. The store itself is *not* thread safe: callers
    sharing one cache between threads must serialize access to it.
    """

    def __init__(self, traces: Optional[Dict[CacheKey, object]] = None):
        self._traces = dict(traces or {})

    def get(self, key: CacheKey):
        trace = self._traces.get(key)
        if trace is not None:
            logger.debug(f"Cache hit for {key[0]} samples")
        return trace

    def get_or_insert(self, key: CacheKey, thunk: Callable[[], object]):
        trace = self.get(key)
        if trace is None:
            trace = thunk()
            self.put(key, trace)
        return trace

    def put(self, key: CacheKey, trace):
        logger.debug(f"Storing trace for {key[0]} samples")
        self._traces[key] = trace

    def clear(self):
        self._traces.clear()

    def __contains__(self, key):
        return key in self._traces

    def __len__(self):
        return len(self._traces)
