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
from typing import Callable

import jax.numpy as jnp

from gensir.completions.batch import BatchSampler, BatchTrace

__all__ = [
    "alive_sample",
]

logger = logging.getLogger(__name__)


def alive_sample(
    sampler: BatchSampler,
    n_samples: int,
    prompt: str,
    validator: Callable[[str], bool],
):
    """
    Draw batches of proposals until :code:`n_samples + 1` of them have
    been accepted by :code:`validator`.

    Each round requests as many completions as are still needed. A round
    may return more valid completions than needed; these are kept.

    Returns :code:`(batch, valid)`, where :code:`len(batch)` is the
    number of trials.
    """
    batch = BatchTrace.empty()
    valid = []
    n_remain = n_samples + 1
    while n_remain > 0:
        new_batch = sampler.draw(n_remain, prompt)
        new_valid = [bool(validator(output)) for output in new_batch.outputs]
        batch = batch.concat(new_batch)
        valid.extend(new_valid)
        n_remain -= sum(new_valid)
        logger.debug(
            f"Alive round: drew {len(new_batch)}, "
            f"{sum(new_valid)} valid, {max(n_remain, 0)} remaining"
        )
    return batch, jnp.array(valid, dtype=bool)
