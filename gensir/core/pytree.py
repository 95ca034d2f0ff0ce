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

"""Contains the Pytree class."""

import abc
import jax.tree_util as jtu

__all__ = [
    "Pytree",
]


class Pytree(metaclass=abc.ABCMeta):
    """
    Base class for datatypes which participate in :code:`jax.tree_util`.

    Subclasses are registered as pytree nodes on definition. The
    :code:`flatten` method returns a pair :code:`(data, xs)`, where
    :code:`data` holds the numeric leaves (arrays, scores) and
    :code:`xs` holds the static metadata (strings, generative functions).
    By default, :code:`unflatten` reconstructs the instance positionally
    as :code:`cls(*data, *xs)`. Subclasses whose field order differs
    override it.
    """

    def __init_subclass__(cls, **kwargs):
        super().__init_subclass__(**kwargs)
        jtu.register_pytree_node(
            cls,
            cls.flatten,
            cls.unflatten,
        )

    @abc.abstractmethod
    def flatten(self):
        pass

    @classmethod
    def unflatten(cls, xs, data):
        return cls(*data, *xs)
