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
Sampling importance resampling (SIR) over a completion oracle, as a
generative function.

Called with arguments :code:`(n_samples, model_prompt, proposal_prompt)`
(the proposal prompt defaults to the model prompt), the
:code:`ImportanceSampler` draws :code:`n_samples` completions from the
proposal, scores each of them under the model, computes importance
weights, and resamples a single completion according to those weights.
Both the :code:`"output"` and the :code:`"chosen"` index are part of the
trace's choice map.

When a :code:`validator` is given, the sampler runs *alive* SIR instead:
proposals are drawn until :code:`n_samples + 1` of them are valid, and
the final proposal is excluded from resampling.

The trace keeps the whole batch, so that constraining or resampling the
chosen index (:code:`generate`, :code:`update`, :code:`regenerate`) does
not require new oracle requests.
"""

import dataclasses
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Tuple

import jax.numpy as jnp

from gensir.combinators.cache import TraceCache
from gensir.completions.batch import BatchSampler, BatchTrace
from gensir.core.datatypes import (
    CHOSEN_ADDR,
    OUTPUT_ADDR,
    VALID_CHOSEN_ADDR,
    AllSelection,
    EmptyChoiceMap,
    GenerativeFunction,
    NoChange,
    NoneSelection,
    Trace,
    UnknownChange,
    choice_map,
    select,
)
from gensir.inference.alive import alive_sample
from gensir.inference.resampling import gumbel_max
from gensir.inference.weights import (
    alive_log_ml_estimate,
    eligible_log_weights,
    importance_weights,
    log_ml_estimate,
)

__all__ = [
    "ConstraintShape",
    "SelectionShape",
    "ImportanceSamplerTrace",
    "ImportanceSampler",
]

logger = logging.getLogger(__name__)

#####
# Constraint and selection shapes
#####


class ConstraintShape(enum.Enum):
    EMPTY = enum.auto()
    CHOSEN = enum.auto()
    VALID_CHOSEN = enum.auto()
    # The chosen index is constrained, the output is present but left
    # unconstrained (`None`), to be regenerated from the chosen index.
    CHOSEN_REGEN = enum.auto()
    UNSUPPORTED = enum.auto()


class SelectionShape(enum.Enum):
    NONE = enum.auto()
    OUTPUT = enum.auto()
    CHOSEN = enum.auto()
    OUTPUT_AND_CHOSEN = enum.auto()
    ALL = enum.auto()
    UNSUPPORTED = enum.auto()


def constraint_shape(chm):
    if chm.is_empty():
        return ConstraintShape.EMPTY
    addrs = chm.get_addresses()
    if addrs == {CHOSEN_ADDR}:
        return ConstraintShape.CHOSEN
    if addrs == {VALID_CHOSEN_ADDR}:
        return ConstraintShape.VALID_CHOSEN
    if addrs == {OUTPUT_ADDR, CHOSEN_ADDR} and chm[OUTPUT_ADDR] is None:
        return ConstraintShape.CHOSEN_REGEN
    return ConstraintShape.UNSUPPORTED


def selection_shape(selection):
    if isinstance(selection, AllSelection):
        return SelectionShape.ALL
    if isinstance(selection, NoneSelection):
        return SelectionShape.NONE
    has_output = OUTPUT_ADDR in selection
    has_chosen = CHOSEN_ADDR in selection
    if has_output and has_chosen:
        return SelectionShape.OUTPUT_AND_CHOSEN
    if has_output:
        return SelectionShape.OUTPUT
    if has_chosen:
        return SelectionShape.CHOSEN
    return SelectionShape.UNSUPPORTED


def _extract_args(args: Tuple):
    if len(args) == 3:
        n_samples, model_prompt, proposal_prompt = args
    elif len(args) == 2:
        n_samples, model_prompt = args
        proposal_prompt = model_prompt
    else:
        raise Exception("Expected 2 or 3 arguments to ImportanceSampler")
    if n_samples < 1:
        raise Exception(f"Expected n_samples >= 1, got {n_samples}")
    return (n_samples, model_prompt, proposal_prompt)


#####
# ImportanceSamplerTrace
#####


@dataclass(frozen=True, eq=False)
class ImportanceSamplerTrace(Trace):
    """
    A trace of an :code:`ImportanceSampler`: the (batched) proposal and
    model completions, the validity of each proposal, the importance
    weights and normalizing constant estimate, and the chosen completion.

    :code:`model_batch` and :code:`proposal_batch` are the same object
    when the sampler scores proposals under the model prompt and sampler
    they were drawn from.
    """

    gen_fn: "ImportanceSampler"
    n_samples: int
    model_prompt: str
    proposal_prompt: str
    model_batch: BatchTrace
    proposal_batch: BatchTrace
    valid: Any
    log_weights: Any
    log_z_est: Any
    chosen_idx: int
    output: str
    tokens: Tuple[str, ...]
    logprobs: Any
    model_score: Any
    score: Any

    def flatten(self):
        return (
            self.model_batch,
            self.proposal_batch,
            self.valid,
            self.log_weights,
            self.log_z_est,
            self.logprobs,
            self.model_score,
            self.score,
        ), (
            self.gen_fn,
            self.n_samples,
            self.model_prompt,
            self.proposal_prompt,
            self.chosen_idx,
            self.output,
            self.tokens,
        )

    @classmethod
    def unflatten(cls, xs, data):
        (
            gen_fn,
            n_samples,
            model_prompt,
            proposal_prompt,
            chosen_idx,
            output,
            tokens,
        ) = xs
        (
            model_batch,
            proposal_batch,
            valid,
            log_weights,
            log_z_est,
            logprobs,
            model_score,
            score,
        ) = data
        return ImportanceSamplerTrace(
            gen_fn,
            n_samples,
            model_prompt,
            proposal_prompt,
            model_batch,
            proposal_batch,
            valid,
            log_weights,
            log_z_est,
            chosen_idx,
            output,
            tokens,
            logprobs,
            model_score,
            score,
        )

    def get_gen_fn(self):
        return self.gen_fn

    def get_args(self):
        return (self.n_samples, self.model_prompt, self.proposal_prompt)

    def get_retval(self):
        return self.output

    def get_score(self):
        return self.score

    def get_choices(self):
        return choice_map({OUTPUT_ADDR: self.output, CHOSEN_ADDR: self.chosen_idx})

    @property
    def n_trials(self):
        return len(self.valid)

    def is_alive(self):
        return self.gen_fn.validator is not None

    def is_admissible(self, chosen_idx):
        assert 0 <= chosen_idx < self.n_trials
        # Alive SIR never resamples the final completion.
        if self.is_alive() and chosen_idx == self.n_trials - 1:
            return False
        return bool(self.valid[chosen_idx])

    def eligible_log_weights(self):
        if self.is_alive():
            return eligible_log_weights(self.log_weights, self.valid)
        return self.log_weights

    def log_total_weight(self):
        if self.is_alive():
            return self.log_z_est + jnp.log(self.n_trials - 1)
        return self.log_z_est + jnp.log(self.n_samples)

    def choose(self, chosen_idx, score=None):
        """
        Return a copy of this trace whose chosen completion is member
        :code:`chosen_idx` of the model batch. The score defaults to
        :code:`model_score - log_z_est`.
        """
        assert 0 <= chosen_idx < self.n_trials
        model_score = self.model_batch.scores[chosen_idx]
        if score is None:
            score = model_score - self.log_z_est
        return dataclasses.replace(
            self,
            chosen_idx=chosen_idx,
            output=self.model_batch.outputs[chosen_idx],
            tokens=self.model_batch.tokens[chosen_idx],
            logprobs=self.model_batch.logprobs[chosen_idx],
            model_score=model_score,
            score=score,
        )

    def project(self, selection):
        shape = selection_shape(selection)
        if shape == SelectionShape.OUTPUT:
            return self.model_score - self.log_z_est
        elif shape == SelectionShape.CHOSEN:
            return self.log_weights[self.chosen_idx] - self.log_total_weight()
        elif shape in (SelectionShape.OUTPUT_AND_CHOSEN, SelectionShape.ALL):
            return self.score
        else:
            return 0.0


#####
# ImportanceSampler
#####


@dataclass(eq=False)
class ImportanceSampler(GenerativeFunction):
    """
    A generative function which performs sampling importance resampling,
    with a :code:`BatchSampler` as the model and another (by default, the
    same one) as the proposal.

    - :code:`validator`: a predicate over outputs. When given, alive SIR
      is performed.
    - :code:`cache_traces`: when set, traces are stored in :code:`cache`
      under :code:`(n_samples, model_prompt, proposal_prompt)`, and later
      calls with the same arguments reuse the stored batch instead of
      querying the oracle.
    """

    model: BatchSampler
    proposal: Optional[BatchSampler] = None
    validator: Optional[Callable[[str], bool]] = None
    cache_traces: bool = False
    cache: TraceCache = field(default_factory=TraceCache)

    def __post_init__(self):
        if self.proposal is None:
            self.proposal = self.model

    def flatten(self):
        return (), (
            self.model,
            self.proposal,
            self.validator,
            self.cache_traces,
            self.cache,
        )

    # Run SIR from scratch.
    def _run(self, key, args):
        n_samples, model_prompt, proposal_prompt = args
        logger.debug(f"Running SIR with {n_samples} samples")

        # Sample (and validate) proposals.
        if self.validator is None:
            prop_batch = self.proposal.draw(n_samples, proposal_prompt)
            valid = jnp.ones(n_samples, dtype=bool)
        else:
            prop_batch, valid = alive_sample(
                self.proposal, n_samples, proposal_prompt, self.validator
            )
        n_trials = len(prop_batch)

        # Score proposals under the model.
        if self.model is self.proposal and model_prompt == proposal_prompt:
            model_batch = prop_batch
        else:
            model_batch = self.model.rescore(
                n_trials, model_prompt, prop_batch.outputs
            )

        # Compute importance weights and normalizing constant.
        log_weights = importance_weights(model_batch.scores, prop_batch.scores)
        if self.validator is None:
            eligible = log_weights
            log_sum_weights, log_z_est = log_ml_estimate(log_weights)
        else:
            eligible, log_sum_weights, log_z_est = alive_log_ml_estimate(
                log_weights, valid
            )

        # Resample according to importance weights.
        key, chosen_idx = gumbel_max(key, eligible)
        model_score = model_batch.scores[chosen_idx]
        trace = ImportanceSamplerTrace(
            self,
            n_samples,
            model_prompt,
            proposal_prompt,
            model_batch,
            prop_batch,
            valid,
            log_weights,
            log_z_est,
            chosen_idx,
            model_batch.outputs[chosen_idx],
            model_batch.tokens[chosen_idx],
            model_batch.logprobs[chosen_idx],
            model_score,
            model_score - log_sum_weights,
        )
        return key, trace

    # Retrieve the cached trace for `args` when caching, else run SIR.
    def _unconditional(self, key, args):
        if not self.cache_traces:
            return self._run(key, args)

        def _simulate():
            nonlocal key
            key, trace = self._run(key, args)
            return trace

        trace = self.cache.get_or_insert(args, _simulate)
        return key, trace

    def simulate(self, key, args):
        args = _extract_args(args)
        if self.cache_traces:
            trace = self.cache.get(args)
            if trace is not None:
                selection = select(OUTPUT_ADDR, CHOSEN_ADDR)
                key, (_, trace, _) = self.regenerate(key, trace, selection, args)
                return key, trace
        key, trace = self._run(key, args)
        if self.cache_traces:
            self.cache.put(args, trace)
        return key, trace

    #####
    # generate
    #####

    def _generate_empty(self, key, chm, args):
        key, trace = self.simulate(key, args)
        return key, (0.0, trace)

    def _generate_chosen(self, key, chm, args):
        key, trace = self._unconditional(key, args)
        chosen_idx = chm[CHOSEN_ADDR]
        if not trace.is_admissible(chosen_idx):
            return key, (-jnp.inf, trace.choose(chosen_idx, -jnp.inf))
        weight = trace.log_weights[chosen_idx] - trace.log_total_weight()
        return key, (weight, trace.choose(chosen_idx))

    def _generate_valid_chosen(self, key, chm, args):
        key, trace = self._unconditional(key, args)
        valid_chosen = chm[VALID_CHOSEN_ADDR]
        assert 0 <= valid_chosen < trace.n_samples
        chosen_idx = int(jnp.flatnonzero(trace.valid)[valid_chosen])
        weight = trace.log_weights[chosen_idx] - trace.log_total_weight()
        return key, (weight, trace.choose(chosen_idx))

    def generate(self, key, chm, args):
        args = _extract_args(args)
        handlers = {
            ConstraintShape.EMPTY: self._generate_empty,
            ConstraintShape.CHOSEN: self._generate_chosen,
            ConstraintShape.CHOSEN_REGEN: self._generate_chosen,
            ConstraintShape.VALID_CHOSEN: self._generate_valid_chosen,
        }
        shape = constraint_shape(chm)
        if shape not in handlers:
            raise NotImplementedError(
                "`generate` not implemented for this set of constraints."
            )
        return handlers[shape](key, chm, args)

    #####
    # update
    #####

    def _update_empty(self, key, prev, new, args):
        return key, (0.0, prev, NoChange, EmptyChoiceMap())

    def _update_chosen_regen(self, key, prev, new, args):
        chosen_idx = new[CHOSEN_ADDR]
        if prev.is_admissible(chosen_idx):
            trace = prev.choose(chosen_idx)
        else:
            trace = prev.choose(chosen_idx, -jnp.inf)
        weight = trace.get_score() - prev.get_score()
        discard = choice_map({CHOSEN_ADDR: prev[CHOSEN_ADDR]})
        return key, (weight, trace, UnknownChange, discard)

    def _update_by_generate(self, key, prev, new, args):
        logger.debug("Falling back to `generate` in `update`")
        key, (_, trace) = self.generate(key, new, args)
        weight = trace.get_score() - prev.get_score()
        touched = new.get_addresses() & {OUTPUT_ADDR, CHOSEN_ADDR}
        discard = prev.filter(select(*touched))
        return key, (weight, trace, UnknownChange, discard)

    def update(self, key, prev, new, args):
        args = _extract_args(args)
        handler = self._update_by_generate
        if args == prev.get_args():
            handlers = {
                ConstraintShape.EMPTY: self._update_empty,
                ConstraintShape.CHOSEN_REGEN: self._update_chosen_regen,
            }
            handler = handlers.get(constraint_shape(new), handler)
        return handler(key, prev, new, args)

    #####
    # regenerate
    #####

    def _regenerate_none(self, key, prev, selection, args):
        return key, (0.0, prev, NoChange)

    def _regenerate_chosen(self, key, prev, selection, args):
        key, chosen_idx = gumbel_max(key, prev.eligible_log_weights())
        return key, (0.0, prev.choose(chosen_idx), UnknownChange)

    def _regenerate_all(self, key, prev, selection, args):
        key, trace = self.simulate(key, args)
        return key, (0.0, trace, UnknownChange)

    def regenerate(self, key, prev, selection, args):
        args = _extract_args(args)
        handlers = {SelectionShape.ALL: self._regenerate_all}
        if args == prev.get_args():
            handlers[SelectionShape.NONE] = self._regenerate_none
            handlers[SelectionShape.OUTPUT_AND_CHOSEN] = self._regenerate_chosen
        shape = selection_shape(selection)
        if shape not in handlers:
            raise NotImplementedError(
                "`regenerate` not implemented for this selection."
            )
        return handlers[shape](key, prev, selection, args)
