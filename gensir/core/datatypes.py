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
The datatypes of the generative function interface: generative functions,
traces, choice maps, selections and change descriptors.

Only the pieces which the completion generative functions read and write
are provided here. Addresses are flat (a single string per random choice).
"""

import abc
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet

from gensir.core.pytree import Pytree

__all__ = [
    "OUTPUT_ADDR",
    "CHOSEN_ADDR",
    "VALID_CHOSEN_ADDR",
    "GenerativeFunction",
    "Trace",
    "ChoiceMap",
    "EmptyChoiceMap",
    "BuiltinChoiceMap",
    "choice_map",
    "Selection",
    "NoneSelection",
    "AllSelection",
    "BuiltinSelection",
    "select",
    "ChangeTangent",
    "NoChange",
    "UnknownChange",
]

#####
# Addresses
#####

OUTPUT_ADDR = "output"
CHOSEN_ADDR = "chosen"
VALID_CHOSEN_ADDR = "valid_chosen"

#####
# GenerativeFunction
#####


class GenerativeFunction(Pytree):
    """
    :code:`GenerativeFunction` abstract class which allows user-defined
    implementations of the generative function interface methods.

    Every method which makes a random choice accepts a
    :code:`jax.random.PRNGKey` as its first argument and returns an
    evolved key as the first element of its result.

    The user *must* match the interface signatures below. This is not
    statically checked.
    """

    def __call__(self, key, *args):
        key, tr = self.simulate(key, args)
        return key, tr.get_retval()

    @abc.abstractmethod
    def simulate(self, key, args):
        pass

    @abc.abstractmethod
    def generate(self, key, chm, args):
        pass

    @abc.abstractmethod
    def update(self, key, prev, new, args):
        pass

    @abc.abstractmethod
    def regenerate(self, key, prev, selection, args):
        pass


#####
# Trace
#####


class Trace(Pytree):
    @abc.abstractmethod
    def get_retval(self):
        pass

    @abc.abstractmethod
    def get_score(self):
        pass

    @abc.abstractmethod
    def get_args(self):
        pass

    @abc.abstractmethod
    def get_choices(self):
        pass

    @abc.abstractmethod
    def get_gen_fn(self):
        pass

    @abc.abstractmethod
    def project(self, selection):
        pass

    def filter(self, selection):
        return selection.filter(self.get_choices())

    def __getitem__(self, addr):
        return self.get_choices()[addr]


#####
# ChoiceMap
#####


class ChoiceMap(Pytree):
    @abc.abstractmethod
    def has_choice(self, addr):
        pass

    @abc.abstractmethod
    def get_choice(self, addr):
        pass

    @abc.abstractmethod
    def get_choices_shallow(self):
        pass

    @abc.abstractmethod
    def merge(self, other):
        pass

    def is_empty(self):
        return len(tuple(self.get_choices_shallow())) == 0

    def get_addresses(self):
        return frozenset(k for (k, _) in self.get_choices_shallow())

    def __getitem__(self, addr):
        return self.get_choice(addr)


@dataclass(frozen=True)
class EmptyChoiceMap(ChoiceMap):
    def flatten(self):
        return (), ()

    def has_choice(self, addr):
        return False

    def get_choice(self, addr):
        raise Exception("EmptyChoiceMap does not address any values.")

    def get_choices_shallow(self):
        return ()

    def merge(self, other):
        return other


@dataclass(frozen=True)
class BuiltinChoiceMap(ChoiceMap):
    """
    A flat map from addresses to values.

    A value of :code:`None` marks an address which is present in the
    constraint but left unconstrained, e.g. the output address of an
    importance sampler whose chosen index is constrained, signalling that
    the output should be regenerated from that index.
    """

    inner: Dict[str, Any] = field(default_factory=dict)

    def flatten(self):
        return (), (tuple(self.inner.items()),)

    @classmethod
    def unflatten(cls, xs, data):
        return BuiltinChoiceMap(dict(xs[0]))

    def has_choice(self, addr):
        return addr in self.inner

    def get_choice(self, addr):
        if addr not in self.inner:
            raise Exception(f"BuiltinChoiceMap has no value at {addr}")
        return self.inner[addr]

    def get_choices_shallow(self):
        return tuple(self.inner.items())

    def merge(self, other):
        new = dict(self.inner)
        for (k, v) in other.get_choices_shallow():
            new[k] = v
        return BuiltinChoiceMap(new)


def choice_map(constraints=None, **kwargs):
    """
    Construct a choice map from a dictionary and/or keyword arguments.

    .. code-block:: python

        chm = choice_map({"chosen": 2})
        chm = choice_map(output=None, chosen=2)
    """
    inner = dict(constraints or {})
    inner.update(kwargs)
    if not inner:
        return EmptyChoiceMap()
    return BuiltinChoiceMap(inner)


#####
# Selection
#####


class Selection(Pytree):
    @abc.abstractmethod
    def filter(self, chm):
        pass

    @abc.abstractmethod
    def __contains__(self, addr):
        pass


@dataclass(frozen=True)
class NoneSelection(Selection):
    def flatten(self):
        return (), ()

    def filter(self, chm):
        return EmptyChoiceMap()

    def __contains__(self, addr):
        return False


@dataclass(frozen=True)
class AllSelection(Selection):
    def flatten(self):
        return (), ()

    def filter(self, chm):
        return chm

    def __contains__(self, addr):
        return True


@dataclass(frozen=True)
class BuiltinSelection(Selection):
    addresses: FrozenSet[str] = frozenset()

    def flatten(self):
        return (), (self.addresses,)

    def filter(self, chm):
        return choice_map(
            {k: v for (k, v) in chm.get_choices_shallow() if k in self.addresses}
        )

    def __contains__(self, addr):
        return addr in self.addresses


def select(*addrs):
    """
    Construct a selection over the given addresses. Selecting no
    addresses yields a :code:`NoneSelection`.
    """
    if not addrs:
        return NoneSelection()
    return BuiltinSelection(frozenset(addrs))


#####
# Change descriptors
#####


# Returned alongside new traces by `update` and `regenerate` to describe
# how the return value changed.


class ChangeTangent(Pytree):
    def flatten(self):
        return (), ()

    def __eq__(self, other):
        return type(self) is type(other)

    def __hash__(self):
        return hash(type(self))

    def __repr__(self):
        return type(self).__name__.lstrip("_")


class _NoChange(ChangeTangent):
    pass


class _UnknownChange(ChangeTangent):
    pass


NoChange = _NoChange()
UnknownChange = _UnknownChange()
