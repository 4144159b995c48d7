"""
KALIGN Alignment Parameters, Bookkeeping & Shared Parameter Store
=================================================================

AlignmentParameters are immutable snapshots: every change produces a new
instance through ``clone()`` which then replaces the one held by the
alignable. Anything still referencing the old object keeps seeing the old
values.

Per-module bookkeeping ("user variables") is a tagged variant. Code that
needs a specific kind asks for it with a capability query
(``kalman_user_variables()``, ``as_rigid_body()``) and gets ``None`` when
the kind does not match.

Author: KALIGN developers
"""

from __future__ import annotations

import numpy as np
from enum import Enum
from fnmatch import fnmatchcase
from typing import Dict, List, Optional, Sequence, Tuple

from .kalign_geometry import Alignable


class ParameterKind(Enum):
    """Parametrization stored in an AlignmentParameters object."""
    RIGID_BODY = "rigid_body"   # 3 shifts + 3 rotations, local frame
    GENERIC = "generic"


class UserVariablesKind(Enum):
    """Bookkeeping variants that can be attached to parameters."""
    GENERIC = "generic"
    KALMAN = "kalman"


# ---------------------------------------------------------------------------
# Bookkeeping
# ---------------------------------------------------------------------------
class UserVariables:
    """Base bookkeeping attached to alignment parameters."""
    kind = UserVariablesKind.GENERIC

    def clone(self) -> 'UserVariables':
        return UserVariables()


class KalmanUserVariables(UserVariables):
    """Per-module statistics of the sequential estimator.

    Attributes:
        alignable: Module the statistics belong to.
        update_graph: Sample the parameter history every N updates.
        n_updates: Number of parameter updates seen so far.
        alignment_flag: True once stored parameters were applied to the
            module's geometry during initialization.
        history: Sampled ``(n_updates, parameters, sigmas)`` tuples.
    """
    kind = UserVariablesKind.KALMAN

    def __init__(self, alignable: Alignable, update_graph: int = 100):
        if update_graph < 1:
            raise ValueError(f"update_graph must be >= 1, got {update_graph}")
        self.alignable = alignable
        self.update_graph = update_graph
        self.n_updates = 0
        self.alignment_flag = False
        self.history: List[Tuple[int, np.ndarray, np.ndarray]] = []
        self.finalized = False
        self._last_parameters: Optional[np.ndarray] = None
        self._last_sigmas: Optional[np.ndarray] = None

    def clone(self) -> 'KalmanUserVariables':
        twin = KalmanUserVariables(self.alignable, self.update_graph)
        twin.n_updates = self.n_updates
        twin.alignment_flag = self.alignment_flag
        twin.history = list(self.history)
        twin.finalized = self.finalized
        twin._last_parameters = self._last_parameters
        twin._last_sigmas = self._last_sigmas
        return twin

    def set_alignment_flag(self, flag: bool) -> None:
        self.alignment_flag = bool(flag)

    def update(self, parameters: 'AlignmentParameters') -> None:
        """Record one parameter update of this module."""
        if parameters.alignable is not self.alignable:
            return
        self.n_updates += 1
        self._last_parameters = np.array(parameters.parameters)
        self._last_sigmas = np.sqrt(np.abs(np.diag(parameters.covariance)))
        if self.n_updates == 1 or self.n_updates % self.update_graph == 0:
            self.history.append((self.n_updates, self._last_parameters,
                                 self._last_sigmas))

    def finalize(self) -> None:
        """Close the history with the last recorded state."""
        if self._last_parameters is None:
            return
        if not self.history or self.history[-1][0] != self.n_updates:
            self.history.append((self.n_updates, self._last_parameters,
                                 self._last_sigmas))
        self.finalized = True

    @property
    def final_parameters(self) -> Optional[np.ndarray]:
        return self._last_parameters

    @property
    def final_sigmas(self) -> Optional[np.ndarray]:
        return self._last_sigmas

    def histogram_parameters(self, prefix: str, collector) -> None:
        """Fill final values and sampled history into a diagnostic sink."""
        if self._last_parameters is None:
            return
        for i, (value, sigma) in enumerate(zip(self._last_parameters,
                                               self._last_sigmas)):
            collector.fill_histogram(f"{prefix}_Parameter{i}", value)
            collector.fill_histogram(f"{prefix}_Sigma{i}", sigma)
            if sigma > 0:
                collector.fill_histogram(f"{prefix}_Pull{i}", value / sigma)
        for n, params, _ in self.history:
            for i, value in enumerate(params):
                collector.fill_graph(f"{prefix}_{self.alignable.name}_Parameter{i}",
                                     n, value)
        collector.fill_histogram(f"{prefix}_NumberOfUpdates", self.n_updates)


# ---------------------------------------------------------------------------
# Alignment parameters
# ---------------------------------------------------------------------------
class AlignmentParameters:
    """Correction vector and covariance of one alignable."""
    kind = ParameterKind.GENERIC

    def __init__(self, alignable: Alignable, parameters: Sequence[float],
                 covariance: np.ndarray,
                 user_variables: Optional[UserVariables] = None):
        p = np.array(parameters, dtype=float).reshape(-1)
        c = np.array(covariance, dtype=float)
        if c.shape != (p.size, p.size):
            raise ValueError(
                f"Covariance shape {c.shape} does not match {p.size} parameters")
        p.setflags(write=False)
        c.setflags(write=False)
        self._alignable = alignable
        self._parameters = p
        self._covariance = c
        self._user_variables = user_variables

    def __repr__(self) -> str:
        return (f"{type(self).__name__}({self._alignable.name!r}, "
                f"{np.array2string(self._parameters, precision=4)})")

    @property
    def alignable(self) -> Alignable:
        return self._alignable

    @property
    def parameters(self) -> np.ndarray:
        return self._parameters

    @property
    def covariance(self) -> np.ndarray:
        return self._covariance

    @property
    def user_variables(self) -> Optional[UserVariables]:
        return self._user_variables

    @property
    def size(self) -> int:
        return self._parameters.size

    def clone(self, parameters: Sequence[float], covariance: np.ndarray,
              user_variables: Optional[UserVariables] = None) -> 'AlignmentParameters':
        """New parameters of the same kind for the same alignable.

        The current user variables are copied unless replacements are given.
        """
        if user_variables is None and self._user_variables is not None:
            user_variables = self._user_variables.clone()
        return type(self)(self._alignable, parameters, covariance, user_variables)

    def as_rigid_body(self) -> Optional['RigidBodyAlignmentParameters']:
        return None

    def kalman_user_variables(self) -> Optional[KalmanUserVariables]:
        uv = self._user_variables
        if uv is not None and uv.kind is UserVariablesKind.KALMAN:
            return uv
        return None


class RigidBodyAlignmentParameters(AlignmentParameters):
    """Three local shifts (u, v, w) and three rotations (alpha, beta, gamma)."""
    kind = ParameterKind.RIGID_BODY
    N_PARAMETERS = 6

    def __init__(self, alignable: Alignable, parameters: Sequence[float],
                 covariance: np.ndarray,
                 user_variables: Optional[UserVariables] = None):
        super().__init__(alignable, parameters, covariance, user_variables)
        if self.size != self.N_PARAMETERS:
            raise ValueError(
                f"Rigid-body parameters need {self.N_PARAMETERS} values, got {self.size}")

    @classmethod
    def zero(cls, alignable: Alignable) -> 'RigidBodyAlignmentParameters':
        return cls(alignable, np.zeros(cls.N_PARAMETERS),
                   np.zeros((cls.N_PARAMETERS, cls.N_PARAMETERS)))

    def translation(self) -> np.ndarray:
        return np.array(self.parameters[:3])

    def rotation(self) -> np.ndarray:
        return np.array(self.parameters[3:])

    def as_rigid_body(self) -> Optional['RigidBodyAlignmentParameters']:
        return self


PARAMETER_CLASSES = {
    ParameterKind.RIGID_BODY: RigidBodyAlignmentParameters,
    ParameterKind.GENERIC: AlignmentParameters,
}


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------
class AlignmentParameterSelector:
    """Select alignables by shell-style name patterns.

    All six rigid-body parameters of a selected alignable are considered
    active; there is no per-parameter mask.
    """

    def __init__(self, alignables: Sequence[Alignable]):
        self._tops = list(alignables)
        self._selected: List[Alignable] = []
        self._seen: set = set()

    def add_selection(self, pattern: str) -> int:
        """Add every alignable whose name matches ``pattern``.

        Returns:
            Number of newly selected alignables.
        """
        added = 0
        for top in self._tops:
            for ali in top.walk():
                if id(ali) not in self._seen and fnmatchcase(ali.name, pattern):
                    self._seen.add(id(ali))
                    self._selected.append(ali)
                    added += 1
        return added

    def selected_alignables(self) -> List[Alignable]:
        return list(self._selected)

    def clear(self) -> None:
        self._selected = []
        self._seen = set()


# ---------------------------------------------------------------------------
# Shared parameter store
# ---------------------------------------------------------------------------
class AlignmentParameterStore:
    """Process-wide table of the alignables that carry a parameter slot.

    The store never changes a parameter object; it only swaps the object
    held by an alignable for a new clone.
    """

    def __init__(self, alignables: Sequence[Alignable] = ()):
        self._alignables: Dict[int, Alignable] = {}
        for ali in alignables:
            self._register(ali)

    @classmethod
    def create(cls, alignables: Sequence[Alignable],
               patterns: Sequence[str]) -> 'AlignmentParameterStore':
        """Attach zeroed rigid-body parameter slots to matching alignables."""
        selector = AlignmentParameterSelector(alignables)
        for pattern in patterns:
            selector.add_selection(pattern)
        store = cls()
        for ali in selector.selected_alignables():
            if ali.alignment_parameters is None:
                ali.alignment_parameters = RigidBodyAlignmentParameters.zero(ali)
            store._register(ali)
        return store

    def _register(self, alignable: Alignable) -> None:
        self._alignables[id(alignable)] = alignable

    def __len__(self) -> int:
        return len(self._alignables)

    def __contains__(self, alignable: Alignable) -> bool:
        return id(alignable) in self._alignables

    def alignables(self) -> List[Alignable]:
        return list(self._alignables.values())

    def parameters(self, alignable: Alignable) -> Optional[AlignmentParameters]:
        return alignable.alignment_parameters

    def update_parameters(self, alignable: Alignable,
                          parameters: AlignmentParameters) -> None:
        """Replace the parameter object held by ``alignable``."""
        if parameters.alignable is not alignable:
            raise ValueError(
                f"Parameters belong to {parameters.alignable.name!r}, "
                f"not {alignable.name!r}")
        alignable.alignment_parameters = parameters
        self._register(alignable)

    def alignable_from_det(self, det: Optional[Alignable]) -> Optional[Alignable]:
        """Nearest alignable (the module itself or an ancestor) with a slot."""
        node = det
        while node is not None:
            if node.alignment_parameters is not None:
                return node
            node = node.mother
        return None
