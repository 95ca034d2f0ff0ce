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

import jax
import jax.numpy as jnp

__all__ = [
    "gumbel_max",
]


def gumbel_max(key, log_weights):
    """
    Sample an index :code:`i` with probability proportional to
    :code:`exp(log_weights[i])`, without normalizing.

    Adds independent standard Gumbel noise :code:`-log(-log(u))` to each
    log weight and returns the position of the maximum (the first one,
    on ties). Entries equal to :code:`-inf` are never selected unless
    all entries are.
    """
    log_weights = jnp.asarray(log_weights)
    key, sub_key = jax.random.split(key)
    noise = jax.random.gumbel(sub_key, shape=log_weights.shape)
    chosen = jnp.argmax(log_weights + noise)
    return key, int(chosen)
