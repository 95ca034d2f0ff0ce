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
`gensir` implements sampling importance resampling (SIR) over a text
completion oracle, exposed through the generative function interface.

- Generative functions are represented as objects whose methods are pure
  functions from `(PRNGKey, ...)` to `(PRNGKey, ...)`.

  | Interface    | Semantics (informal)                                                    |
  | ------------ | ----------------------------------------------------------------------- |
  | `simulate`   | Run SIR, and record the batch and the resampled completion              |
  | `generate`   | Run SIR with the chosen index constrained, and compute a weight         |
  | `update`     | Move a trace to new constraints or arguments, and compute a weight      |
  | `regenerate` | Resample the selected choices of a trace, and compute a weight          |

- Alive SIR (a `validator` over outputs) and trace caching are options of
  the `ImportanceSampler`.
"""

__version__ = "0.1.0"

# Public exports.
from .core import *
from .completions import *
from .inference import *
from .combinators import *
