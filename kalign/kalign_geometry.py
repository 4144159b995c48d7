"""
KALIGN Geometry — Alignable Module Tree & Navigation
=====================================================

Rigid detector modules ("alignables") arranged in a tree. Leaves are
sensitive planar modules carrying a detector id; composites group them
(a layer, a telescope arm, ...). Moving or rotating a composite moves
and rotates everything beneath it.

Frame conventions:
  - surface.rotation rows are the local u, v, w axes in global coordinates
  - local → global vector:  R.T @ v
  - global → local vector:  R @ v
  - a local-frame rotation L corresponds to the global rotation R.T @ L @ R

Author: KALIGN developers
"""

from __future__ import annotations

import numpy as np
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Sequence
from scipy.spatial.transform import Rotation


def euler_angles_to_matrix(angles: Sequence[float]) -> np.ndarray:
    """Rigid-body rotation from (alpha, beta, gamma) about x, y, z.

    Extrinsic x-y-z composition, i.e. Rz(gamma) @ Ry(beta) @ Rx(alpha).
    """
    return Rotation.from_euler('xyz', np.asarray(angles, dtype=float)).as_matrix()


def rotation_about_z(angle: float) -> np.ndarray:
    """Active rotation by ``angle`` radians about the global z axis."""
    return Rotation.from_euler('z', float(angle)).as_matrix()


@dataclass
class AlignmentPositionError:
    """Positional uncertainty attached to a module, in global coordinates."""
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0

    def as_vector(self) -> np.ndarray:
        return np.array([self.x, self.y, self.z])

    @classmethod
    def from_local(cls, surface: 'AlignableSurface',
                   local_sigmas: Sequence[float]) -> 'AlignmentPositionError':
        g = surface.to_global(np.asarray(local_sigmas, dtype=float))
        return cls(float(g[0]), float(g[1]), float(g[2]))


class AlignableSurface:
    """Position and orientation of an alignable."""

    def __init__(self, position: Optional[np.ndarray] = None,
                 rotation: Optional[np.ndarray] = None):
        self.position = (np.zeros(3) if position is None
                         else np.asarray(position, dtype=float).copy())
        self.rotation = (np.eye(3) if rotation is None
                         else np.asarray(rotation, dtype=float).copy())

    def to_global(self, local_vector: np.ndarray) -> np.ndarray:
        return self.rotation.T @ np.asarray(local_vector, dtype=float)

    def to_local(self, global_vector: np.ndarray) -> np.ndarray:
        return self.rotation @ np.asarray(global_vector, dtype=float)

    def to_global_point(self, local_point: np.ndarray) -> np.ndarray:
        return self.position + self.to_global(local_point)

    def to_local_point(self, global_point: np.ndarray) -> np.ndarray:
        return self.to_local(np.asarray(global_point, dtype=float) - self.position)

    def to_global_rotation(self, local_rotation: np.ndarray) -> np.ndarray:
        return self.rotation.T @ local_rotation @ self.rotation

    @property
    def normal(self) -> np.ndarray:
        return self.rotation[2].copy()


class Alignable:
    """A detector component whose position and orientation may be corrected.

    Args:
        name: Hierarchical name, e.g. ``"Telescope/Plane3"``. Used by the
            pattern based parameter selection.
        alignable_id: Unique integer id. Defines the canonical module order.
        position: Global position of the module centre.
        rotation: Orientation matrix (rows = local axes in global frame).
        region_id: Detector-region identifier of the hits recorded here.
        det_id: Detector id of a sensitive leaf; ``None`` for composites.
        components: Child alignables.
    """

    def __init__(self, name: str, alignable_id: int,
                 position: Optional[np.ndarray] = None,
                 rotation: Optional[np.ndarray] = None,
                 region_id: int = 0,
                 det_id: Optional[int] = None,
                 components: Optional[List['Alignable']] = None):
        self.name = name
        self.alignable_id = int(alignable_id)
        self.region_id = int(region_id)
        self.det_id = det_id
        self.surface = AlignableSurface(position, rotation)
        self.mother: Optional[Alignable] = None
        self.components: List[Alignable] = []
        self.alignment_parameters = None
        self.alignment_position_error: Optional[AlignmentPositionError] = None
        for comp in components or []:
            self.add_component(comp)

    def __repr__(self) -> str:
        return f"Alignable({self.name!r}, id={self.alignable_id})"

    def add_component(self, component: 'Alignable') -> None:
        component.mother = self
        self.components.append(component)

    # --- tree traversal ---------------------------------------------------

    def walk(self) -> Iterator['Alignable']:
        """Pre-order traversal over this alignable and all descendants."""
        yield self
        for comp in self.components:
            yield from comp.walk()

    def deep_components(self) -> List['Alignable']:
        """All sensitive leaves below (or equal to) this alignable."""
        if not self.components:
            return [self]
        leaves = []
        for comp in self.components:
            leaves.extend(comp.deep_components())
        return leaves

    def global_position(self) -> np.ndarray:
        return self.surface.position.copy()

    def global_rotation(self) -> np.ndarray:
        return self.surface.rotation.copy()

    # --- rigid-body movements --------------------------------------------

    def move(self, global_shift: np.ndarray) -> None:
        """Translate this alignable and all its components."""
        shift = np.asarray(global_shift, dtype=float)
        for node in self.walk():
            node.surface.position = node.surface.position + shift

    def rotate_in_global_frame(self, rotation: np.ndarray) -> None:
        """Rotate about this alignable's own position.

        Components' positions are rotated about the same centre, so a
        composite turns as one rigid body.
        """
        center = self.surface.position.copy()
        for node in self.walk():
            node.surface.position = center + rotation @ (node.surface.position - center)
            node.surface.rotation = node.surface.rotation @ rotation.T

    def rotate_in_local_frame(self, rotation: np.ndarray) -> None:
        self.rotate_in_global_frame(self.surface.to_global_rotation(rotation))

    def rotate_around_global_z(self, angle: float) -> None:
        self.rotate_in_global_frame(rotation_about_z(angle))

    def set_alignment_position_error(self, ape: AlignmentPositionError) -> None:
        """Attach a positional uncertainty to this alignable and its components."""
        for node in self.walk():
            node.alignment_position_error = ape


class AlignableNavigator:
    """Read-only lookup from a hit's detector id to its sensitive module."""

    def __init__(self, alignables: Sequence[Alignable]):
        self._map: Dict[int, Alignable] = {}
        for top in alignables:
            for leaf in top.deep_components():
                if leaf.det_id is not None:
                    self._map[leaf.det_id] = leaf

    def __len__(self) -> int:
        return len(self._map)

    def __contains__(self, det_id: int) -> bool:
        return det_id in self._map

    def alignable_from_det_id(self, det_id: int) -> Optional[Alignable]:
        return self._map.get(det_id)

    def alignable_from_hit(self, hit) -> Optional[Alignable]:
        return self._map.get(hit.det_id)

    def release(self) -> None:
        self._map.clear()


def frame_to_frame_jacobian(target: Alignable, source: Alignable) -> np.ndarray:
    """6x6 map from ``source`` rigid-body parameters to those induced on ``target``.

    Small-angle approximation: a shift ``d`` and rotation ``w`` of the
    source (both in its local frame) move the target by
    ``w x (p_target - p_source) + d`` and rotate it by ``w``, expressed in
    the target's local frame.
    """
    if target is source:
        return np.eye(6)
    r_t = target.surface.rotation
    r_s = source.surface.rotation
    lever = target.surface.position - source.surface.position
    skew = np.array([
        [0.0, -lever[2], lever[1]],
        [lever[2], 0.0, -lever[0]],
        [-lever[1], lever[0], 0.0],
    ])
    jac = np.zeros((6, 6))
    jac[:3, :3] = r_t @ r_s.T
    jac[:3, 3:] = -r_t @ skew @ r_s.T
    jac[3:, 3:] = r_t @ r_s.T
    return jac


def canonical_order(alignable: Alignable):
    """Sort key defining the run's total order over modules."""
    return (alignable.alignable_id, alignable.name)


def build_telescope(n_planes: int = 6, spacing: float = 10.0,
                    region_ids: Optional[Sequence[int]] = None,
                    name: str = "Telescope",
                    offset: Optional[Sequence[float]] = None,
                    first_id: int = 1) -> Alignable:
    """Build a composite of planar modules stacked along global z.

    Each plane is perpendicular to z with local u = x, v = y. Plane ``i``
    gets alignable id ``first_id + 1 + i`` and detector id
    ``1000 * first_id + i``, so several telescopes can coexist.
    """
    if n_planes < 1:
        raise ValueError(f"Telescope needs at least one plane, got {n_planes}")
    if region_ids is None:
        region_ids = [1] * n_planes
    if len(region_ids) != n_planes:
        raise ValueError("region_ids must give one id per plane")
    base = np.zeros(3) if offset is None else np.asarray(offset, dtype=float)

    planes = []
    for i in range(n_planes):
        planes.append(Alignable(
            name=f"{name}/Plane{i}",
            alignable_id=first_id + 1 + i,
            position=base + np.array([0.0, 0.0, i * spacing]),
            region_id=region_ids[i],
            det_id=1000 * first_id + i,
        ))
    center = base + np.array([0.0, 0.0, 0.5 * (n_planes - 1) * spacing])
    return Alignable(name=name, alignable_id=first_id, position=center,
                     components=planes)
