"""Voting structures clustering rigid transform votes.

Rotations are voted as axis-angle vectors into a `RotationSpace`, an octree over [-pi, pi]^3. Votes of the same model
falling into the same rotation cell are averaged into one hypothesis. A `TransformSpace` additionally discretizes the
translations, so that instances with the same orientation at different positions end up in different cells.

Votes are cast in batches. They are summed per cell with NumPy so that only the cell bookkeeping is done in Python.

Classes:
    Entry: Accumulates the votes of one model in one rotation cell.
    Cell: A full rotation space leaf holding one `Entry` per model.
    RotationSpace: Octree over axis-angle vectors.
    TransformSpace: Octree over translations whose full leaves own a `RotationSpace`.
"""
import logging
from typing import Any, Dict, List, Union, Tuple

import numpy as np

from .interfaces import Hypothesis
from .octree import Id3D, Octree
from .utils import get_axis_angle_from_rotation_matrix, get_rotation_matrix_from_axis_angle

logger = logging.getLogger(__name__)


def _group_by_ids(ids: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Groups the rows of `ids`. Returns the distinct rows in order of first occurrence and the group of each row."""
    unique_ids, first, inverse = np.unique(ids, axis=0, return_index=True, return_inverse=True)
    order = np.argsort(first)
    rank = np.empty_like(order)
    rank[order] = np.arange(len(order))
    return unique_ids[order], rank[inverse.ravel()]


def _sum_by_group(groups: np.ndarray, num_groups: int, *values: np.ndarray) -> List[np.ndarray]:
    """Returns the number of rows per group followed by the per-group sums of each of `values`."""
    sums = [np.bincount(groups, minlength=num_groups)]
    for value in values:
        value_sums = np.zeros((num_groups,) + value.shape[1:])
        np.add.at(value_sums, groups, value)
        sums.append(value_sums)
    return sums


def _build_rotation_octree(leaf_size: float) -> Octree:
    bound = np.pi + 1e-9
    octree = Octree()
    octree.build(bounds=[-bound, bound] * 3, leaf_size=leaf_size)
    return octree


class Entry:
    """Running sums of the axis-angle vectors and translations voted for one model in one cell."""

    def __init__(self) -> None:
        self.axis_angle = np.zeros(3)
        self.translation = np.zeros(3)
        self.num_transforms = 0

    def add_rigid_transform(self, axis_angle: np.ndarray, translation: np.ndarray) -> None:
        self.add_rigid_transforms(axis_angle, translation, 1)

    def add_rigid_transforms(self, axis_angle_sum: np.ndarray, translation_sum: np.ndarray, count: int) -> None:
        """Adds `count` votes given by the sums of their axis-angle vectors and translations."""
        self.axis_angle += axis_angle_sum
        self.translation += translation_sum
        self.num_transforms += count

    def compute_average_rigid_transform(self) -> None:
        """Replaces the sums by their mean. Calling it again is a no-op."""
        if self.num_transforms < 2:
            return
        self.axis_angle /= self.num_transforms
        self.translation /= self.num_transforms
        self.num_transforms = 1


class Cell:
    """A full rotation space leaf. Maps models to their `Entry` in insertion order."""

    def __init__(self, rotation_3d_id: Union[Id3D, None] = None, translation_3d_id: Union[Id3D, None] = None) -> None:
        self.rotation_3d_id = rotation_3d_id
        self.translation_3d_id = translation_3d_id
        self.model_to_entry: Dict[Any, Entry] = dict()

    def add_rigid_transforms(self,
                             model: Any,
                             axis_angle_sum: np.ndarray,
                             translation_sum: np.ndarray,
                             count: int) -> None:
        entry = self.model_to_entry.get(model)
        if entry is None:
            entry = Entry()
            self.model_to_entry[model] = entry
        entry.add_rigid_transforms(axis_angle_sum, translation_sum, count)

    def compute_average_rigid_transform_in_entries(self, record_cell_ids: bool = False) -> List[Hypothesis]:
        """Averages every entry and returns one hypothesis per model.

        Args:
            record_cell_ids: Store the ids of this cell in the hypotheses.

        Returns:
            The hypotheses in model insertion order.
        """
        hypotheses = list()
        for model, entry in self.model_to_entry.items():
            entry.compute_average_rigid_transform()
            rigid_transform = np.empty(12)
            rigid_transform[:9] = get_rotation_matrix_from_axis_angle(entry.axis_angle).ravel()
            rigid_transform[9:] = entry.translation
            hypothesis = Hypothesis(model=model, rigid_transform=rigid_transform)
            if record_cell_ids:
                hypothesis.rotation_3d_id = self.rotation_3d_id
                hypothesis.translation_3d_id = self.translation_3d_id
            hypotheses.append(hypothesis)
        return hypotheses


class RotationSpace:
    """Octree over axis-angle vectors whose full leaves are `Cell`s.

    Attributes:
        translation_3d_id: Id of the translation cell owning this rotation space, if any.
    """

    def __init__(self, leaf_size: float = np.deg2rad(6.0), translation_3d_id: Union[Id3D, None] = None) -> None:
        self.translation_3d_id = translation_3d_id
        self._octree = _build_rotation_octree(leaf_size)
        self._full_cells: List[Cell] = list()

    def add_rigid_transform(self, model: Any, axis_angle: np.ndarray, translation: np.ndarray) -> bool:
        """Votes for the rigid transform (`axis_angle`, `translation`) of `model`.

        Returns:
            `False` if `axis_angle` lies outside the rotation space, `True` otherwise.
        """
        return self.add_rigid_transforms(model, np.reshape(axis_angle, (1, 3)), np.reshape(translation, (1, 3))) == 1

    def add_rigid_transforms(self, model: Any, axis_angles: np.ndarray, translations: np.ndarray) -> int:
        """Votes for a batch of rigid transforms of `model`.

        New cells are created in the order of their first vote.

        Args:
            model: The voting model.
            axis_angles: The Nx3 rotations as axis-angle vectors.
            translations: The Nx3 translations.

        Returns:
            The number of votes cast. Votes with axis-angle vectors outside the rotation space are dropped.
        """
        _axis_angles = np.asarray(axis_angles, dtype=np.float64).reshape(-1, 3)
        _translations = np.asarray(translations, dtype=np.float64).reshape(-1, 3)
        ids, inside = self._octree.get_3d_ids(_axis_angles)
        if not np.all(inside):
            logger.warning(f"Dropping {np.count_nonzero(~inside)} votes with axis-angle vectors out of the rotation "
                           f"space bounds.")
            ids, _axis_angles, _translations = ids[inside], _axis_angles[inside], _translations[inside]
        if len(ids) == 0:
            return 0

        cell_ids, groups = _group_by_ids(ids)
        counts, axis_angle_sums, translation_sums = _sum_by_group(groups, len(cell_ids), _axis_angles, _translations)
        for id_3d, axis_angle_sum, translation_sum, count in zip(map(tuple, cell_ids.tolist()),
                                                                 axis_angle_sums,
                                                                 translation_sums,
                                                                 counts.tolist()):
            self.add_rigid_transform_sum(model, id_3d, axis_angle_sum, translation_sum, count)
        return len(ids)

    def add_rigid_transform_sum(self,
                                model: Any,
                                rotation_3d_id: Id3D,
                                axis_angle_sum: np.ndarray,
                                translation_sum: np.ndarray,
                                count: int) -> None:
        """Adds `count` votes of `model`, given by their sums, to the cell `rotation_3d_id`."""
        leaf = self._octree.create_leaf_from_3d_id(rotation_3d_id)
        if leaf.data is None:
            leaf.data = Cell(rotation_3d_id=rotation_3d_id, translation_3d_id=self.translation_3d_id)
            self._full_cells.append(leaf.data)
        leaf.data.add_rigid_transforms(model, axis_angle_sum, translation_sum, count)

    def compute_average_rigid_transform_in_cells(self, record_cell_ids: bool = False) -> List[Hypothesis]:
        """Averages the votes of every model in every cell.

        Args:
            record_cell_ids: Store the cell ids in the hypotheses.

        Returns:
            One hypothesis per (cell, model).
        """
        hypotheses = list()
        for cell in self._full_cells:
            hypotheses.extend(cell.compute_average_rigid_transform_in_entries(record_cell_ids=record_cell_ids))
        return hypotheses

    def get_full_cells(self) -> List[Cell]:
        return self._full_cells

    def get_octree(self) -> Octree:
        return self._octree


class TransformSpace:
    """Octree over translations whose full leaves own a `RotationSpace`.

    With `position_discretization` set to `None` there is no translation octree and all votes go into a single
    rotation space, i.e. votes are clustered by rotation only.

    Attributes:
        rotation_discretization: Leaf size of the rotation spaces in radians.
        position_discretization: Leaf size of the translation octree or `None`.
    """

    def __init__(self,
                 bounds: Union[np.ndarray, List[float], None] = None,
                 position_discretization: Union[float, None] = None,
                 rotation_discretization: float = np.deg2rad(6.0)) -> None:
        self.rotation_discretization = rotation_discretization
        self.position_discretization = position_discretization
        self._rotation_spaces: List[RotationSpace] = list()
        if position_discretization is None:
            self._octree = None
            self._rotation_spaces.append(RotationSpace(leaf_size=rotation_discretization))
        else:
            if bounds is None:
                raise ValueError("A positional discretization needs translation bounds.")
            self._octree = Octree()
            self._octree.build(bounds=bounds, leaf_size=position_discretization)
            # Shares the geometry of all rotation spaces. Only used to compute rotation cell ids.
            self._rotation_octree = _build_rotation_octree(rotation_discretization)

    def add_rigid_transform(self, model: Any, rigid_transform: np.ndarray) -> bool:
        """Votes for `rigid_transform` of `model`.

        Returns:
            `False` if the vote lies outside the translation or rotation bounds, `True` otherwise.
        """
        return self.add_rigid_transforms(model, np.reshape(rigid_transform, (1, 12))) == 1

    def add_rigid_transforms(self, model: Any, rigid_transforms: np.ndarray) -> int:
        """Votes for a batch of rigid transforms of `model`.

        The votes are grouped by translation and rotation cell at once. Translation cells and their rotation cells are
        created in the order of their first vote.

        Args:
            model: The voting model.
            rigid_transforms: Nx12 values, the row-major 3x3 rotations followed by the translations.

        Returns:
            The number of votes cast. Votes outside the translation or rotation bounds are dropped.
        """
        _rigid_transforms = np.asarray(rigid_transforms, dtype=np.float64).reshape(-1, 12)
        if len(_rigid_transforms) == 0:
            return 0
        axis_angles = get_axis_angle_from_rotation_matrix(_rigid_transforms[:, :9])
        translations = _rigid_transforms[:, 9:]
        if self._octree is None:
            return self._rotation_spaces[0].add_rigid_transforms(model, axis_angles, translations)

        translation_ids, inside = self._octree.get_3d_ids(translations)
        rotation_ids, rotation_inside = self._rotation_octree.get_3d_ids(axis_angles)
        if not np.all(rotation_inside[inside]):
            logger.warning(f"Dropping {np.count_nonzero(inside & ~rotation_inside)} votes with axis-angle vectors out "
                           f"of the rotation space bounds.")
        inside &= rotation_inside
        if not np.any(inside):
            return 0

        cell_ids, groups = _group_by_ids(np.hstack([translation_ids, rotation_ids])[inside])
        counts, axis_angle_sums, translation_sums = _sum_by_group(groups,
                                                                  len(cell_ids),
                                                                  axis_angles[inside],
                                                                  translations[inside])
        for cell_id, axis_angle_sum, translation_sum, count in zip(cell_ids.tolist(),
                                                                   axis_angle_sums,
                                                                   translation_sums,
                                                                   counts.tolist()):
            translation_3d_id = tuple(cell_id[:3])
            leaf = self._octree.create_leaf_from_3d_id(translation_3d_id)
            if leaf.data is None:
                leaf.data = RotationSpace(leaf_size=self.rotation_discretization, translation_3d_id=translation_3d_id)
                self._rotation_spaces.append(leaf.data)
            leaf.data.add_rigid_transform_sum(model, tuple(cell_id[3:]), axis_angle_sum, translation_sum, count)
        return int(np.count_nonzero(inside))

    def compute_average_rigid_transform_in_cells(self, record_cell_ids: bool = False) -> List[Hypothesis]:
        """Averages the votes of all rotation spaces.

        Args:
            record_cell_ids: Store the cell ids in the hypotheses.

        Returns:
            One hypothesis per (translation cell, rotation cell, model).
        """
        hypotheses = list()
        for rotation_space in self._rotation_spaces:
            hypotheses.extend(rotation_space.compute_average_rigid_transform_in_cells(record_cell_ids=record_cell_ids))
        return hypotheses

    def get_rotation_spaces(self) -> List[RotationSpace]:
        return self._rotation_spaces

    def get_octree(self) -> Union[Octree, None]:
        return self._octree
