"""Registered object models and the geometric hash table of their oriented point pairs.

Classes:
    Model: A registered object model.
    ModelLibrary: Stores the object models and hashes their oriented point pairs by geometric signature.
"""
import logging
import time
from typing import Any, Dict, List, Union, Tuple

import numpy as np

from .octree import Octree, PointCloudOctree
from .utils import compute_oriented_point_pair_signature, points_are_coplanar

logger = logging.getLogger(__name__)

ModelPairs = Dict["Model", List[Tuple[int, int]]]


class Model:
    """A registered object model.

    Attributes:
        object_name: The unique name of the object.
        user_data: Arbitrary data passed through to the recognition results.
        octree: The voxelized model points and normals.
        octree_center_of_mass: The mean of the voxelized model points.
    """

    def __init__(self,
                 points: np.ndarray,
                 normals: np.ndarray,
                 voxel_size: float,
                 object_name: str,
                 user_data: Any = None) -> None:
        self.object_name = object_name
        self.user_data = user_data
        self.octree = PointCloudOctree()
        self.octree.build_from_point_cloud(points=points, normals=normals, voxel_size=voxel_size)
        self.octree_center_of_mass = self.octree.get_center_of_mass()

    def get_number_of_octree_points(self) -> int:
        return self.octree.get_number_of_full_leaves()

    def __repr__(self) -> str:
        return f"Model({self.object_name!r}, {self.get_number_of_octree_points()} points)"


class ModelLibrary:
    """Stores the object models and hashes their oriented point pairs by geometric signature.

    The hash table is an `Octree` over the signature domain [-eps, pi + eps]^3 with `num_of_cells` cells per axis.
    Each full leaf maps the models to the (ordered) pairs of model leaf indices whose signature falls into it.

    Attributes:
        pair_width: Distance between the points of an oriented point pair.
        voxel_size: Side length of the model octree leaves.
        max_coplanarity_angle: Maximal deviation in radians for a point pair to count as co-planar.
        ignore_coplanar_opps: Skip co-planar point pairs when hashing.
    """

    def __init__(self,
                 pair_width: float,
                 voxel_size: float,
                 max_coplanarity_angle: float = np.deg2rad(3.0),
                 ignore_coplanar_opps: bool = True,
                 num_of_cells: int = 60) -> None:
        self.pair_width = pair_width
        self.voxel_size = voxel_size
        self.max_coplanarity_angle = max_coplanarity_angle
        self.ignore_coplanar_opps = ignore_coplanar_opps

        self._models: Dict[str, Model] = dict()
        self._hash_table = Octree()
        eps = 1e-6
        self._hash_table.build(bounds=[-eps, np.pi + eps] * 3, leaf_size=(np.pi + 2 * eps) / num_of_cells)

    def set_max_coplanarity_angle_degrees(self, degrees: float) -> None:
        self.max_coplanarity_angle = np.deg2rad(degrees)

    def ignore_coplanar_point_pairs_on(self) -> None:
        self.ignore_coplanar_opps = True

    def ignore_coplanar_point_pairs_off(self) -> None:
        self.ignore_coplanar_opps = False

    def add_model(self,
                  points: np.ndarray,
                  normals: np.ndarray,
                  object_name: str,
                  user_data: Any = None) -> bool:
        """Voxelizes the model and adds its oriented point pairs to the hash table.

        Args:
            points: The Nx3 model points.
            normals: The Nx3 unit model normals.
            object_name: The unique name of the model.
            user_data: Arbitrary data passed through to the recognition results.

        Returns:
            `False` if a model named `object_name` already exists, `True` otherwise.
        """
        if object_name in self._models:
            logger.warning(f"A model named '{object_name}' already exists. Skipping.")
            return False

        start = time.time()
        model = Model(points=points,
                      normals=normals,
                      voxel_size=self.voxel_size,
                      object_name=object_name,
                      user_data=user_data)
        self._models[object_name] = model
        num_pairs = self._add_to_hash_table(model)
        logger.debug(f"Added model '{object_name}' with {model.get_number_of_octree_points()} points and "
                     f"{num_pairs} oriented point pairs in {time.time() - start}s.")
        return True

    def _add_to_hash_table(self, model: Model) -> int:
        points = model.octree.get_points()
        normals = model.octree.get_normals()
        num_pairs = 0
        for i in range(len(points)):
            neighbors = model.octree.get_full_leaves_intersected_by_sphere(center=points[i], radius=self.pair_width)
            neighbors = neighbors[neighbors != i]
            if neighbors.size == 0:
                continue
            p1, n1 = points[i], normals[i]
            p2, n2 = points[neighbors], normals[neighbors]
            if self.ignore_coplanar_opps:
                keep = ~points_are_coplanar(p1, n1, p2, n2, self.max_coplanarity_angle)
                neighbors, p2, n2 = neighbors[keep], p2[keep], n2[keep]
                if neighbors.size == 0:
                    continue

            signatures = compute_oriented_point_pair_signature(p1, n1, p2, n2)
            ids, _ = self._hash_table.get_3d_ids(signatures)
            for id_3d, j in zip(map(tuple, ids.tolist()), neighbors.tolist()):
                leaf = self._hash_table.create_leaf_from_3d_id(id_3d)
                if leaf.data is None:
                    leaf.data = dict()
                leaf.data.setdefault(model, list()).append((i, j))
            num_pairs += len(neighbors)
        return num_pairs

    def remove_all_models(self) -> None:
        self._models = dict()
        self._hash_table.clear()

    def get_model(self, object_name: str) -> Union[Model, None]:
        return self._models.get(object_name)

    def get_models(self) -> Dict[str, Model]:
        return self._models

    def get_hash_table(self) -> Octree:
        return self._hash_table

    def get_hash_table_cell(self, signature: np.ndarray) -> Union[ModelPairs, None]:
        """Returns the models and their point pairs hashed into the cell of `signature`, if any.

        Args:
            signature: The geometric signature of an oriented point pair.

        Returns:
            A dict mapping models to lists of (i, j) model leaf index pairs, or `None` if the cell is empty.
        """
        leaf = self._hash_table.get_leaf(signature)
        if leaf is None:
            return None
        return leaf.data

    def __len__(self) -> int:
        return len(self._models)
