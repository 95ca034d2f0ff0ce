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
Importance weights and normalizing constant estimates.

For a batch of :code:`n` proposals with proposal scores :math:`q_i` and
model scores :math:`p_i`, the log importance weights are
:math:`w_i = p_i - q_i` and the estimate of the log normalizing constant
is :math:`\\log \\sum_i e^{w_i} - \\log n`.

In the alive variant, only the first :math:`m = n_{trials} - 1` members
are eligible for resampling, and invalid members carry no weight.
"""

import jax.numpy as jnp
from jax.scipy.special import logsumexp

__all__ = [
    "importance_weights",
    "log_normalizer",
    "log_ml_estimate",
    "eligible_log_weights",
    "alive_log_ml_estimate",
]


def importance_weights(model_scores, proposal_scores):
    return model_scores - proposal_scores


def log_normalizer(log_weights):
    # `logsumexp` subtracts the running maximum before exponentiating.
    return logsumexp(log_weights)


def log_ml_estimate(log_weights):
    """
    Returns :code:`(log_sum_weights, log_z_est)` for standard SIR.
    """
    n = len(log_weights)
    log_sum_weights = log_normalizer(log_weights)
    return log_sum_weights, log_sum_weights - jnp.log(n)


def eligible_log_weights(log_weights, valid):
    """
    Force the weight of invalid members to :code:`-inf`, and drop the
    final member, which only certifies that validity was still reachable.
    """
    n_trials = len(valid)
    masked = jnp.where(jnp.asarray(valid), log_weights, -jnp.inf)
    return masked[: n_trials - 1]


def alive_log_ml_estimate(log_weights, valid):
    """
    Returns :code:`(eligible, log_sum_weights, log_z_est)` for alive SIR.
    """
    eligible = eligible_log_weights(log_weights, valid)
    m = len(eligible)
    log_sum_weights = log_normalizer(eligible)
    return eligible, log_sum_weights, log_sum_weights - jnp.log(m)
