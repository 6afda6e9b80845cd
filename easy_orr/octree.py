"""Spatial indices over point clouds and rotation/translation domains.

All octrees in this module have a fixed resolution: only the full leaves are stored, in a hash map keyed by their
integer 3D id. Inner nodes are never materialized.

Classes:
    OctreeLeaf: A full leaf of an `Octree`.
    Octree: Fixed-resolution octree over an axis-aligned box.
    PointCloudOctree: Voxelized point cloud with normals used as scene and model index.
    OctreeZProjection: Projection of a `PointCloudOctree` onto the xy-plane used for visibility tests.
"""
import logging
import math
import time
from typing import Any, Dict, List, Union, Tuple

import numpy as np
import open3d as o3d

from .utils import get_point_cloud_from_points, normalize

logger = logging.getLogger(__name__)

Id3D = Tuple[int, int, int]


class OctreeLeaf:
    """A full leaf of an `Octree`.

    Attributes:
        id_3d: The integer 3D id of the leaf.
        index: The position of the leaf in the full leaves list of its octree.
        data: Arbitrary data attached to the leaf.
    """

    def __init__(self, id_3d: Id3D, index: int, data: Any = None) -> None:
        self.id_3d = id_3d
        self.index = index
        self.data = data


class Octree:
    """Fixed-resolution octree over the axis-aligned box `bounds`.

    Bounds are stored as [x_min, x_max, y_min, y_max, z_min, z_max]. Both bounds are inclusive: points on the upper
    bound belong to the last leaf along that axis.
    """

    def __init__(self) -> None:
        self._bounds = None
        self._leaf_size = None
        self._num_cells = None
        self._leaves: Dict[Id3D, OctreeLeaf] = dict()
        self._full_leaves: List[OctreeLeaf] = list()

    def build(self, bounds: Union[np.ndarray, List[float]], leaf_size: float) -> None:
        """Discards all leaves and sets up the octree over `bounds` with leaves of side length `leaf_size`.

        Args:
            bounds: The box [x_min, x_max, y_min, y_max, z_min, z_max].
            leaf_size: The side length of the leaves.
        """
        _bounds = np.asarray(bounds, dtype=np.float64).ravel()
        if _bounds.size != 6:
            raise ValueError(f"Octree bounds need 6 values but have {_bounds.size}.")
        if np.any(_bounds[1::2] < _bounds[::2]):
            raise ValueError(f"Lower octree bounds must not exceed the upper bounds but are {_bounds}.")
        if leaf_size <= 0:
            raise ValueError(f"Leaf size must be positive but is {leaf_size}.")

        self.clear()
        self._bounds = _bounds
        self._leaf_size = float(leaf_size)
        # Tolerant ceil: extents that are multiples of the leaf size must not gain an extra cell.
        num_cells = np.ceil((_bounds[1::2] - _bounds[::2]) / self._leaf_size - 1e-9).astype(np.int64)
        self._num_cells = np.maximum(num_cells, 1)

    def clear(self) -> None:
        """Removes all leaves. The bounds and the leaf size are kept."""
        self._leaves = dict()
        self._full_leaves = list()

    @property
    def leaf_size(self) -> float:
        return self._leaf_size

    @property
    def num_cells(self) -> np.ndarray:
        return self._num_cells

    def is_built(self) -> bool:
        return self._bounds is not None

    def get_bounds(self) -> np.ndarray:
        assert self.is_built(), "Octree needs to be built first."
        return self._bounds.copy()

    def get_3d_ids(self, points: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """Computes the integer 3D ids of the leaves containing `points`.

        Args:
            points: A single point or a Nx3 array of points.

        Returns:
            The Nx3 ids and a mask of the points inside the bounds. Ids of points outside the bounds lie outside the
            valid id range.
        """
        assert self.is_built(), "Octree needs to be built first."
        _points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        lower, upper = self._bounds[::2], self._bounds[1::2]
        inside = np.all((_points >= lower) & (_points <= upper), axis=1)
        ids = np.floor((_points - lower) / self._leaf_size).astype(np.int64)
        ids = np.where(inside[:, None], np.clip(ids, 0, self._num_cells - 1), ids)
        return ids, inside

    def get_3d_id(self, point: np.ndarray) -> Union[Id3D, None]:
        ids, inside = self.get_3d_ids(point)
        if not inside[0]:
            return None
        return tuple(int(i) for i in ids[0])

    def create_leaf_from_3d_id(self, id_3d: Id3D) -> OctreeLeaf:
        """Returns the leaf with id `id_3d`, creating it if it doesn't exist yet."""
        leaf = self._leaves.get(id_3d)
        if leaf is None:
            leaf = OctreeLeaf(id_3d=id_3d, index=len(self._full_leaves))
            self._leaves[id_3d] = leaf
            self._full_leaves.append(leaf)
        return leaf

    def create_leaf(self, point: np.ndarray) -> Union[OctreeLeaf, None]:
        """Returns the leaf containing `point`, creating it if it doesn't exist yet.

        Args:
            point: The point.

        Returns:
            The leaf or `None` if `point` lies outside the octree bounds.
        """
        id_3d = self.get_3d_id(point)
        if id_3d is None:
            return None
        return self.create_leaf_from_3d_id(id_3d)

    def get_leaf_from_3d_id(self, id_3d: Id3D) -> Union[OctreeLeaf, None]:
        return self._leaves.get(id_3d)

    def get_leaf(self, point: np.ndarray) -> Union[OctreeLeaf, None]:
        """Returns the full leaf containing `point` or `None` if it is empty or out of bounds."""
        id_3d = self.get_3d_id(point)
        if id_3d is None:
            return None
        return self._leaves.get(id_3d)

    def get_full_leaves(self) -> List[OctreeLeaf]:
        """Returns the full leaves in creation order."""
        return self._full_leaves

    def get_number_of_full_leaves(self) -> int:
        return len(self._full_leaves)


class PointCloudOctree(Octree):
    """Voxelized point cloud with normals.

    Every occupied voxel is a full leaf holding the mean of its points and the normalized mean of its normals. The
    leaf data are kept as arrays (`get_points`, `get_normals`) indexed by `OctreeLeaf.index`, which allows vectorized
    lookups through `get_leaf_indices`.
    """

    def __init__(self) -> None:
        super().__init__()
        self._points = np.empty((0, 3))
        self._normals = np.empty((0, 3))
        self._leaf_ids = np.empty((0, 3), dtype=np.int64)
        self._sorted_keys = np.empty(0, dtype=np.int64)
        self._sorted_leaf_indices = np.empty(0, dtype=np.int64)
        self._kdtree = None

    def clear(self) -> None:
        super().clear()
        self._points = np.empty((0, 3))
        self._normals = np.empty((0, 3))
        self._leaf_ids = np.empty((0, 3), dtype=np.int64)
        self._sorted_keys = np.empty(0, dtype=np.int64)
        self._sorted_leaf_indices = np.empty(0, dtype=np.int64)
        self._kdtree = None

    def build_from_point_cloud(self, points: np.ndarray, normals: np.ndarray, voxel_size: float) -> None:
        """Voxelizes `points` and `normals` at resolution `voxel_size`.

        The octree bounds start at the minimum of the points and are aligned to the voxel grid.

        Args:
            points: The Nx3 points.
            normals: The Nx3 unit normals.
            voxel_size: The side length of the voxels.
        """
        start = time.time()
        _points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        _normals = np.asarray(normals, dtype=np.float64).reshape(-1, 3)
        if len(_points) == 0:
            raise ValueError("Can't build an octree from an empty point cloud.")
        if _points.shape != _normals.shape:
            raise ValueError(f"Points and normals need the same shape but have {_points.shape} and {_normals.shape}.")
        if voxel_size <= 0:
            raise ValueError(f"Voxel size must be positive but is {voxel_size}.")

        lower = _points.min(axis=0)
        num_cells = np.floor((_points.max(axis=0) - lower) / voxel_size) + 1
        bounds = np.column_stack([lower, lower + num_cells * voxel_size]).ravel()
        self.build(bounds=bounds, leaf_size=voxel_size)

        ids, _ = self.get_3d_ids(_points)
        leaf_ids, inverse = np.unique(ids, axis=0, return_inverse=True)
        inverse = inverse.ravel()
        counts = np.bincount(inverse, minlength=len(leaf_ids)).astype(np.float64)

        leaf_points = np.zeros((len(leaf_ids), 3))
        np.add.at(leaf_points, inverse, _points)
        leaf_normals = np.zeros((len(leaf_ids), 3))
        np.add.at(leaf_normals, inverse, _normals)

        self._points = leaf_points / counts[:, None]
        self._normals = normalize(leaf_normals)
        self._leaf_ids = leaf_ids
        for id_3d in leaf_ids.tolist():
            self.create_leaf_from_3d_id(tuple(id_3d))

        keys = self._encode_3d_ids(leaf_ids)
        self._sorted_leaf_indices = np.argsort(keys, kind="stable")
        self._sorted_keys = keys[self._sorted_leaf_indices]
        self._kdtree = o3d.geometry.KDTreeFlann(get_point_cloud_from_points(self._points))
        logger.debug(f"Voxelized {len(_points)} points into {len(leaf_ids)} leaves in {time.time() - start}s.")

    def _encode_3d_ids(self, ids: np.ndarray) -> np.ndarray:
        return (ids[:, 0] * self._num_cells[1] + ids[:, 1]) * self._num_cells[2] + ids[:, 2]

    def get_points(self) -> np.ndarray:
        """Returns the Nx3 leaf points ordered by leaf index."""
        return self._points

    def get_normals(self) -> np.ndarray:
        """Returns the Nx3 leaf normals ordered by leaf index."""
        return self._normals

    def get_leaf_3d_ids(self) -> np.ndarray:
        """Returns the Nx3 integer ids of the full leaves ordered by leaf index."""
        return self._leaf_ids

    def get_center_of_mass(self) -> np.ndarray:
        """Returns the mean of the leaf points."""
        assert len(self._points) > 0, "Octree needs to be built first."
        return self._points.mean(axis=0)

    def get_leaf_indices_from_3d_ids(self, ids: np.ndarray) -> np.ndarray:
        """Looks up the leaf indices of the integer 3D ids `ids`.

        Args:
            ids: The Nx3 integer ids. Ids outside the octree are allowed.

        Returns:
            The N leaf indices, -1 where there is no full leaf.
        """
        _ids = np.asarray(ids, dtype=np.int64).reshape(-1, 3)
        if len(self._sorted_keys) == 0:
            return np.full(len(_ids), -1, dtype=np.int64)
        valid = np.all((_ids >= 0) & (_ids < self._num_cells), axis=1)
        keys = self._encode_3d_ids(np.where(valid[:, None], _ids, 0))
        positions = np.minimum(np.searchsorted(self._sorted_keys, keys), len(self._sorted_keys) - 1)
        found = valid & (self._sorted_keys[positions] == keys)
        return np.where(found, self._sorted_leaf_indices[positions], -1)

    def get_leaf_indices(self, points: np.ndarray) -> np.ndarray:
        """Looks up the indices of the full leaves containing `points`.

        Args:
            points: A single point or a Nx3 array of points.

        Returns:
            The N leaf indices, -1 where there is no full leaf.
        """
        ids, inside = self.get_3d_ids(points)
        return np.where(inside, self.get_leaf_indices_from_3d_ids(ids), -1)

    def get_full_leaves_intersected_by_sphere(self, center: np.ndarray, radius: float) -> np.ndarray:
        """Returns the indices of the full leaves intersected by the sphere around `center`.

        A leaf counts as intersected if its point lies within half a leaf diagonal of the sphere surface.

        Args:
            center: The sphere center.
            radius: The sphere radius.

        Returns:
            The leaf indices.
        """
        assert self._kdtree is not None, "Octree needs to be built first."
        tolerance = 0.5 * math.sqrt(3.0) * self._leaf_size
        k, indices, distances = self._kdtree.search_radius_vector_3d(np.asarray(center, dtype=np.float64),
                                                                    radius + tolerance)
        if k == 0:
            return np.empty(0, dtype=np.int64)
        indices = np.asarray(indices, dtype=np.int64)[:k]
        distances = np.sqrt(np.asarray(distances)[:k])
        return indices[distances >= radius - tolerance]


class OctreeZProjection:
    """Projection of a `PointCloudOctree` onto the xy-plane.

    Each pixel (a column of leaves along z) stores the minimal and maximal z coordinate of the leaf points projecting
    into it. Points in front of the observed surface, i.e. with a smaller z coordinate than its pixel minus
    `abs_zdist_thresh`, would occlude the scene and are therefore illegal.
    """

    def __init__(self) -> None:
        self.abs_zdist_thresh = 0.0
        self._lower = None
        self._pixel_size = None
        self._num_pixels = None
        self._sorted_keys = np.empty(0, dtype=np.int64)
        self._z_min = np.empty(0)
        self._z_max = np.empty(0)

    def clear(self) -> None:
        self._sorted_keys = np.empty(0, dtype=np.int64)
        self._z_min = np.empty(0)
        self._z_max = np.empty(0)

    def build(self, octree: PointCloudOctree, abs_zdist_thresh: float = 0.0) -> None:
        """Projects the full leaves of `octree` onto the xy-plane.

        Args:
            octree: The voxelized scene.
            abs_zdist_thresh: Tolerance in z direction of the visibility test.
        """
        self.clear()
        self.abs_zdist_thresh = abs_zdist_thresh
        self._lower = octree.get_bounds()[[0, 2]]
        self._pixel_size = octree.leaf_size
        self._num_pixels = octree.num_cells[:2]

        ids = octree.get_leaf_3d_ids()
        keys, inverse = np.unique(ids[:, 0] * self._num_pixels[1] + ids[:, 1], return_inverse=True)
        inverse = inverse.ravel()
        z = octree.get_points()[:, 2]
        self._z_min = np.full(len(keys), np.inf)
        np.minimum.at(self._z_min, inverse, z)
        self._z_max = np.full(len(keys), -np.inf)
        np.maximum.at(self._z_max, inverse, z)
        self._sorted_keys = keys
        logger.debug(f"Projected {len(ids)} leaves onto {len(keys)} pixels.")

    def get_number_of_pixels(self) -> int:
        return len(self._sorted_keys)

    def get_pixels(self, points: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Looks up the pixels of `points`.

        Args:
            points: A single point or a Nx3 array of points.

        Returns:
            A mask of the points projecting into a non-empty pixel and the minimal and maximal z values of their
            pixels (NaN where there is no pixel).
        """
        _points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        if len(self._sorted_keys) == 0:
            return np.zeros(len(_points), dtype=bool), np.full(len(_points), np.nan), np.full(len(_points), np.nan)
        ids = np.floor((_points[:, :2] - self._lower) / self._pixel_size).astype(np.int64)
        valid = np.all((ids >= 0) & (ids < self._num_pixels), axis=1)
        keys = np.where(valid, ids[:, 0] * self._num_pixels[1] + ids[:, 1], 0)
        positions = np.minimum(np.searchsorted(self._sorted_keys, keys), len(self._sorted_keys) - 1)
        found = valid & (self._sorted_keys[positions] == keys)
        z_min = np.where(found, self._z_min[positions], np.nan)
        z_max = np.where(found, self._z_max[positions], np.nan)
        return found, z_min, z_max

    def get_pixel(self, point: np.ndarray) -> Union[Tuple[float, float], None]:
        """Returns the z range of the pixel of `point` or `None` if the pixel is empty."""
        found, z_min, z_max = self.get_pixels(point)
        if not found[0]:
            return None
        return float(z_min[0]), float(z_max[0])

    def is_in_front(self, points: np.ndarray) -> np.ndarray:
        """Checks which `points` lie in front of the projected surface, i.e. would occlude it.

        Args:
            points: A single point or a Nx3 array of points.

        Returns:
            A mask of the occluding points. Points without pixel are never occluding.
        """
        _points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        found, z_min, _ = self.get_pixels(_points)
        return found & (_points[:, 2] < np.where(found, z_min, np.inf) - self.abs_zdist_thresh)
