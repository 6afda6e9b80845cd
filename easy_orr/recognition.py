"""RANSAC-based 3D object recognition with oriented point pairs.

Classes:
    ObjectRecognitionRANSAC: The RANSAC-based object recognition algorithm.

Functions:
    compute_rigid_transform: Rigid transform mapping one oriented point pair onto another.
    compute_number_of_iterations: Number of RANSAC iterations for a given success probability.
"""
import logging
import math
import sys
import time
from typing import Any, List, Union, Tuple

import numpy as np
import tqdm

from .graph import ConflictGraph, build_conflict_graph
from .interfaces import Hypothesis, OrientedPointPair, Output, RecognitionInterface, RecognitionModes
from .model_library import Model, ModelLibrary
from .octree import Octree, OctreeZProjection, PointCloudOctree
from .rotation_space import TransformSpace
from .utils import (InputTypes, compute_oriented_point_pair_signature, normalize, points_are_coplanar, project_on_plane,
                    tabulate_output)

logger = logging.getLogger(__name__)

_VERIFICATION_BATCH_POINTS = 2 ** 17


def _compute_pair_frame(a: np.ndarray,
                        a_n: np.ndarray,
                        b: np.ndarray,
                        b_n: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Orthonormal frame of an oriented point pair. Returns the origin and the frame axes as matrix columns."""
    a, a_n, b, b_n = (np.asarray(v, dtype=np.float64) for v in (a, a_n, b, b_n))
    x = normalize(b - a)
    y = normalize(normalize(project_on_plane(a_n, x)) + normalize(project_on_plane(b_n, x)))
    z = np.cross(x, y)
    return 0.5 * (a + b), np.stack([x, y, z], axis=-1)


def compute_rigid_transform(a1: np.ndarray,
                            a1_n: np.ndarray,
                            b1: np.ndarray,
                            b1_n: np.ndarray,
                            a2: np.ndarray,
                            a2_n: np.ndarray,
                            b2: np.ndarray,
                            b2_n: np.ndarray) -> np.ndarray:
    """Computes the rigid transform mapping the oriented point pair (a1, b1) onto (a2, b2).

    Each pair defines a frame: the origin is the midpoint of the points, the x-axis points from a to b, the y-axis is
    the normalized sum of both normals projected onto the plane orthogonal to x and z = x cross y. The transform maps
    the first frame onto the second. Inputs may be single vectors or batches of shape (N, 3).

    Args:
        a1: First point(s) of the source pair.
        a1_n: Unit normal(s) at `a1`.
        b1: Second point(s) of the source pair.
        b1_n: Unit normal(s) at `b1`.
        a2: First point(s) of the target pair.
        a2_n: Unit normal(s) at `a2`.
        b2: Second point(s) of the target pair.
        b2_n: Unit normal(s) at `b2`.

    Returns:
        12 values per transform (row-major rotation followed by translation), shape (12,) or (N, 12).
    """
    origin_1, frame_1 = _compute_pair_frame(a1, a1_n, b1, b1_n)
    origin_2, frame_2 = _compute_pair_frame(a2, a2_n, b2, b2_n)
    rotation = frame_2 @ np.swapaxes(frame_1, -1, -2)
    translation = origin_2 - np.einsum("...ij,...j->...i", rotation, origin_1)
    batch_shape = np.broadcast_shapes(rotation.shape[:-2], translation.shape[:-1])
    rotation = np.broadcast_to(rotation, batch_shape + (3, 3))
    translation = np.broadcast_to(translation, batch_shape + (3,))
    return np.concatenate([rotation.reshape(batch_shape + (9,)), translation], axis=-1)


def compute_number_of_iterations(success_probability: float, relative_obj_size: float) -> int:
    """Computes the number of RANSAC iterations needed to sample a pair on each object with `success_probability`.

    The probability of sampling both points of a pair on the same object is estimated as a quarter of
    `relative_obj_size`.

    Args:
        success_probability: The desired success probability in (0, 1).
        relative_obj_size: The expected size of the objects relative to the scene.

    Returns:
        The number of iterations, at least 1.
    """
    assert 0.0 < success_probability < 1.0, f"Success probability must be in (0, 1) but is {success_probability}."
    if relative_obj_size <= 0:
        raise ValueError(f"Relative object size must be positive but is {relative_obj_size}.")
    p = 0.25 * relative_obj_size
    if 1.0 - p <= 0.0:
        return 1
    return int(math.ceil(math.log(1.0 - success_probability) / math.log(1.0 - p) + 1.0))


class ObjectRecognitionRANSAC(RecognitionInterface):
    """The RANSAC-based object recognition algorithm.

    Finds instances of registered object models in a scene point cloud and estimates their 6D poses. Pairs of oriented
    scene points at distance `pair_width` are sampled and looked up in the geometric hash table of the model library.
    Every matching model pair votes for a rigid transform. Votes are clustered in rotation and translation, averaged
    into hypotheses and verified against the scene. Hypotheses explaining the same part of the scene are resolved in
    favor of the one with the highest match confidence.

    Attributes:
        pair_width: Distance between the points of an oriented point pair. Should be about half the extent of the
                    visible part of the objects.
        voxel_size: Side length of the scene and model octree leaves.
        relative_obj_size: Expected object size relative to the scene. Determines the number of iterations.
        visibility: Minimal fraction of model points explained by the scene for a hypothesis to be accepted.
        relative_num_of_illegal_pts: Maximal fraction of model points occluding the scene.
        intersection_fraction: Maximal tolerated support overlap of two accepted hypotheses.
        max_coplanarity_angle: Maximal deviation in radians for a point pair to count as co-planar.
        scene_bounds_enlargement_factor: Relative enlargement of the scene bounds within which models may be placed.
        ignore_coplanar_opps: Skip co-planar point pairs in the scene and the models.
        abs_zdist_thresh: Tolerance in z direction of the explanation and visibility tests.
        position_discretization: Translation cell size of the vote clustering. `None` clusters by rotation only.
        rotation_discretization: Rotation cell size of the vote clustering in radians.
        record_cell_ids: Record the voting cells in the hypotheses.
        rec_mode: The recognition mode.

    Methods:
        add_model(points, normals, object_name, user_data): Adds a model to the model library.
        recognize(scene, normals, success_probability, ...): Recognizes the models in the scene.
        clear(): Removes all models and all scene related data.
    """

    def __init__(self,
                 pair_width: float,
                 voxel_size: float,
                 relative_obj_size: float = 0.05,
                 visibility: float = 0.2,
                 relative_num_of_illegal_pts: float = 0.02,
                 intersection_fraction: float = 0.03,
                 max_coplanarity_angle: float = 3.0,
                 scene_bounds_enlargement_factor: float = 0.25,
                 ignore_coplanar_opps: bool = True,
                 abs_zdist_thresh: float = -1.0,
                 position_discretization: Union[float, None] = -1.0,
                 rotation_discretization: float = 6.0,
                 record_cell_ids: bool = False,
                 seed: Union[int, None] = None,
                 progress: bool = False) -> None:
        """
        Args:
            pair_width: Distance between the points of an oriented point pair.
            voxel_size: Side length of the scene and model octree leaves.
            relative_obj_size: Expected object size relative to the scene.
            visibility: Minimal fraction of model points explained by the scene.
            relative_num_of_illegal_pts: Maximal fraction of model points occluding the scene.
            intersection_fraction: Maximal tolerated support overlap of two accepted hypotheses.
            max_coplanarity_angle: Maximal deviation in degrees for a point pair to count as co-planar.
            scene_bounds_enlargement_factor: Relative enlargement of the scene bounds within which models may be
                                             placed.
            ignore_coplanar_opps: Skip co-planar point pairs in the scene and the models.
            abs_zdist_thresh: Tolerance in z direction of the explanation and visibility tests. If -1, uses
                              1.5 * `voxel_size`.
            position_discretization: Translation cell size of the vote clustering. If -1, uses 5 * `voxel_size`. If
                                     `None`, clusters by rotation only.
            rotation_discretization: Rotation cell size of the vote clustering in degrees.
            record_cell_ids: Record the voting cells in the hypotheses.
            seed: Seed of the random number generator.
            progress: Show progress bars.
        """
        super().__init__(name="ObjRecRANSAC", progress=progress)
        if pair_width <= 0 or voxel_size <= 0:
            raise ValueError(f"Pair width and voxel size must be positive but are {pair_width} and {voxel_size}.")

        self.pair_width = pair_width
        self.voxel_size = voxel_size
        self.relative_obj_size = relative_obj_size
        self.visibility = visibility
        self.relative_num_of_illegal_pts = relative_num_of_illegal_pts
        self.intersection_fraction = intersection_fraction
        self.scene_bounds_enlargement_factor = scene_bounds_enlargement_factor
        self.abs_zdist_thresh = 1.5 * voxel_size if abs_zdist_thresh == -1.0 else abs_zdist_thresh
        self.position_discretization = 5.0 * voxel_size if position_discretization == -1.0 else position_discretization
        self.rotation_discretization = np.deg2rad(rotation_discretization)
        self.record_cell_ids = record_cell_ids
        self.rec_mode = RecognitionModes.FULL_RECOGNITION

        self._model_library = ModelLibrary(pair_width=pair_width,
                                           voxel_size=voxel_size,
                                           max_coplanarity_angle=np.deg2rad(max_coplanarity_angle),
                                           ignore_coplanar_opps=ignore_coplanar_opps)
        self._scene_octree = PointCloudOctree()
        self._scene_projection = OctreeZProjection()
        self._transform_space = None
        self._sampled_oriented_point_pairs: List[OrientedPointPair] = list()
        self._accepted_hypotheses: List[Hypothesis] = list()
        self._rng = np.random.default_rng(seed)

    @property
    def max_coplanarity_angle(self) -> float:
        return self._model_library.max_coplanarity_angle

    @property
    def ignore_coplanar_opps(self) -> bool:
        return self._model_library.ignore_coplanar_opps

    def set_max_coplanarity_angle_degrees(self, degrees: float) -> None:
        self._model_library.set_max_coplanarity_angle_degrees(degrees)

    def ignore_coplanar_point_pairs_on(self) -> None:
        self._model_library.ignore_coplanar_point_pairs_on()

    def ignore_coplanar_point_pairs_off(self) -> None:
        self._model_library.ignore_coplanar_point_pairs_off()

    def set_scene_bounds_enlargement_factor(self, value: float) -> None:
        self.scene_bounds_enlargement_factor = value

    def enter_test_mode_sample_opp(self) -> None:
        """Stops the recognition after sampling. The pairs are available through `get_sampled_oriented_point_pairs`."""
        self.rec_mode = RecognitionModes.SAMPLE_OPP

    def enter_test_mode_test_hypotheses(self) -> None:
        """Stops the recognition after verification. The hypotheses are available through `get_accepted_hypotheses`."""
        self.rec_mode = RecognitionModes.TEST_HYPOTHESES

    def leave_test_mode(self) -> None:
        self.rec_mode = RecognitionModes.FULL_RECOGNITION

    def add_model(self,
                  points: InputTypes,
                  normals: Union[np.ndarray, List[List[float]], None] = None,
                  object_name: str = "",
                  user_data: Any = None) -> bool:
        """Adds a model to the model library.

        Args:
            points: The model data. An Open3D point cloud, a Nx3 array of points or a Nx6 array of points and normals.
            normals: The Nx3 unit model normals, if not part of `points`.
            object_name: The unique name of the model.
            user_data: Arbitrary data passed through to the recognition results.

        Returns:
            `False` if a model named `object_name` already exists, `True` otherwise.
        """
        _points, _normals = self._eval_data(data=points, normals=normals)
        if len(_points) == 0:
            raise ValueError(f"Model '{object_name}' has no points.")
        return self._model_library.add_model(points=_points,
                                             normals=_normals,
                                             object_name=object_name,
                                             user_data=user_data)

    def clear(self) -> None:
        """Removes all models and all scene related data."""
        self._model_library.remove_all_models()
        self._clear_scene_data()

    def _clear_scene_data(self) -> None:
        self._scene_octree.clear()
        self._scene_projection.clear()
        self._transform_space = None
        self._sampled_oriented_point_pairs = list()
        self._accepted_hypotheses = list()

    def _eval_kwargs(self, **kwargs: Any) -> None:
        """Updates the attributes with run-time overrides."""
        for key in ["relative_obj_size",
                    "visibility",
                    "relative_num_of_illegal_pts",
                    "intersection_fraction",
                    "scene_bounds_enlargement_factor",
                    "record_cell_ids",
                    "progress"]:
            setattr(self, key, kwargs.get(key, getattr(self, key)))

        self.abs_zdist_thresh = kwargs.get("abs_zdist_thresh", self.abs_zdist_thresh)
        if self.abs_zdist_thresh == -1.0:
            self.abs_zdist_thresh = 1.5 * self.voxel_size
        self.position_discretization = kwargs.get("position_discretization", self.position_discretization)
        if self.position_discretization == -1.0:
            self.position_discretization = 5.0 * self.voxel_size

        for key in ["pair_width", "voxel_size"]:
            if key in kwargs and kwargs[key] != getattr(self, key):
                raise ValueError(f"`{key}` is fixed by the model library and can't be changed at run time.")

    def recognize(self,
                  scene: InputTypes,
                  normals: Union[np.ndarray, List[List[float]], None] = None,
                  success_probability: float = 0.99,
                  **kwargs: Any) -> List[Output]:
        """Recognizes the models of the model library in `scene`.

        In the test modes, the recognition stops early and returns an empty list. The intermediate results are
        available through `get_sampled_oriented_point_pairs` and `get_accepted_hypotheses`.

        Args:
            scene: The scene data. An Open3D point cloud, a Nx3 array of points or a Nx6 array of points and normals.
            normals: The Nx3 unit scene normals, if not part of `scene`.
            success_probability: The desired probability of recognizing each object present in the scene.

        Returns:
            The recognized object instances.
        """
        start = time.time()
        if success_probability <= 0.0:
            raise ValueError(f"Success probability must be positive but is {success_probability}.")
        if success_probability >= 1.0:
            logger.warning(f"Success probability must be smaller than 1 but is {success_probability}. Using 0.99.")
            success_probability = 0.99
        self._eval_kwargs(**kwargs)
        self._clear_scene_data()

        _scene, _normals = self._eval_data(data=scene, normals=normals)
        if len(_scene) == 0:
            logger.warning(f"{self.name}: Scene is empty.")
            return list()
        if len(self._model_library) == 0:
            logger.warning(f"{self.name}: Model library is empty.")
            return list()

        self._scene_octree.build_from_point_cloud(points=_scene, normals=_normals, voxel_size=self.voxel_size)
        self._scene_projection.build(octree=self._scene_octree, abs_zdist_thresh=self.abs_zdist_thresh)

        num_iterations = compute_number_of_iterations(success_probability=success_probability,
                                                      relative_obj_size=self.relative_obj_size)
        logger.debug(f"{self.name}: Running {num_iterations} iterations on "
                     f"{self._scene_octree.get_number_of_full_leaves()} scene leaves.")

        oriented_point_pairs = self._sample_oriented_point_pairs(num_iterations=num_iterations)
        self._sampled_oriented_point_pairs = oriented_point_pairs
        if self.rec_mode == RecognitionModes.SAMPLE_OPP:
            return list()

        self._transform_space = self._generate_hypotheses(oriented_point_pairs=oriented_point_pairs)
        hypotheses = self._group_hypotheses(transform_space=self._transform_space)
        accepted_hypotheses = self._test_hypotheses(hypotheses=hypotheses)
        if self.rec_mode == RecognitionModes.TEST_HYPOTHESES:
            self._accepted_hypotheses = accepted_hypotheses
            return list()

        graph = build_conflict_graph(hypotheses=accepted_hypotheses, intersection_fraction=self.intersection_fraction)
        recognized_objects = self._filter_weak_hypotheses(graph=graph, hypotheses=accepted_hypotheses)

        logger.debug(f"{self.name}: Recognized {len(recognized_objects)} objects in {time.time() - start}s.")
        if recognized_objects:
            logger.debug(f"{self.name}: Result:\n{tabulate_output(recognized_objects)}")
        return recognized_objects

    def get_enlarged_scene_bounds(self) -> np.ndarray:
        """Returns the scene bounds enlarged by `scene_bounds_enlargement_factor` times their largest extent."""
        bounds = self._scene_octree.get_bounds()
        enlargement = self.scene_bounds_enlargement_factor * np.max(bounds[1::2] - bounds[::2])
        bounds[::2] -= enlargement
        bounds[1::2] += enlargement
        return bounds

    def _sample_oriented_point_pairs(self, num_iterations: int) -> List[OrientedPointPair]:
        start = time.time()
        points = self._scene_octree.get_points()
        normals = self._scene_octree.get_normals()
        oriented_point_pairs = list()
        for _ in tqdm.trange(num_iterations,
                             desc=f"{self.name}: Sampling",
                             file=sys.stdout,
                             disable=not self.progress):
            i = int(self._rng.integers(len(points)))
            candidates = self._scene_octree.get_full_leaves_intersected_by_sphere(center=points[i],
                                                                                   radius=self.pair_width)
            candidates = candidates[candidates != i]
            if candidates.size == 0:
                continue
            j = int(candidates[self._rng.integers(candidates.size)])
            if self.ignore_coplanar_opps and points_are_coplanar(points[i], normals[i], points[j], normals[j],
                                                                 self.max_coplanarity_angle):
                continue
            oriented_point_pairs.append(OrientedPointPair(p1=points[i], n1=normals[i], p2=points[j], n2=normals[j]))
        logger.debug(f"{self.name}: Sampled {len(oriented_point_pairs)} oriented point pairs in "
                     f"{time.time() - start}s.")
        return oriented_point_pairs

    def _generate_hypotheses(self, oriented_point_pairs: List[OrientedPointPair]) -> TransformSpace:
        start = time.time()
        bounds = self.get_enlarged_scene_bounds()
        lower, upper = bounds[::2], bounds[1::2]
        transform_space = TransformSpace(bounds=bounds,
                                         position_discretization=self.position_discretization,
                                         rotation_discretization=self.rotation_discretization)
        num_votes, num_rejected = 0, 0
        for pair in tqdm.tqdm(oriented_point_pairs,
                              desc=f"{self.name}: Voting",
                              file=sys.stdout,
                              disable=not self.progress):
            signature = compute_oriented_point_pair_signature(pair.p1, pair.n1, pair.p2, pair.n2)
            cell = self._model_library.get_hash_table_cell(signature)
            if cell is None:
                continue
            for model, model_pairs in cell.items():
                model_points = model.octree.get_points()
                model_normals = model.octree.get_normals()
                indices = np.asarray(model_pairs, dtype=np.int64)
                rigid_transforms = compute_rigid_transform(model_points[indices[:, 0]],
                                                           model_normals[indices[:, 0]],
                                                           model_points[indices[:, 1]],
                                                           model_normals[indices[:, 1]],
                                                           pair.p1, pair.n1, pair.p2, pair.n2)
                # Transforms moving the model out of the scene are not worth a vote.
                centers = (np.einsum("nij,j->ni", rigid_transforms[:, :9].reshape(-1, 3, 3),
                                     model.octree_center_of_mass) + rigid_transforms[:, 9:])
                inside = np.all((centers >= lower) & (centers <= upper), axis=1)
                num_cast = transform_space.add_rigid_transforms(model, rigid_transforms[inside])
                num_votes += num_cast
                num_rejected += len(rigid_transforms) - num_cast
        logger.debug(f"{self.name}: Cast {num_votes} votes ({num_rejected} rejected) in {time.time() - start}s.")
        return transform_space

    def _group_hypotheses(self, transform_space: TransformSpace) -> List[Hypothesis]:
        start = time.time()
        hypotheses = transform_space.compute_average_rigid_transform_in_cells(record_cell_ids=self.record_cell_ids)
        logger.debug(f"{self.name}: Grouped votes into {len(hypotheses)} hypotheses in {time.time() - start}s.")
        return hypotheses

    def _explain_points(self, points: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """Matches transformed model points against the scene.

        Args:
            points: The Nx3 transformed model points.

        Returns:
            The index of the explaining scene leaf per point (-1 if unexplained) and a mask of the illegal points.
        """
        scene_points = self._scene_octree.get_points()
        ids, _ = self._scene_octree.get_3d_ids(points)
        leaf_indices = np.full(len(points), -1, dtype=np.int64)
        for z_offset in (0, -1, 1):
            candidate_ids = ids.copy()
            candidate_ids[:, 2] += z_offset
            candidates = self._scene_octree.get_leaf_indices_from_3d_ids(candidate_ids)
            is_new = (leaf_indices == -1) & (candidates != -1)
            if z_offset != 0:
                is_new &= np.abs(scene_points[candidates, 2] - points[:, 2]) <= self.abs_zdist_thresh
            leaf_indices[is_new] = candidates[is_new]
        is_illegal = (leaf_indices == -1) & self._scene_projection.is_in_front(points)
        return leaf_indices, is_illegal

    def _test_hypotheses(self, hypotheses: List[Hypothesis]) -> List[Hypothesis]:
        start = time.time()
        model_to_indices = dict()
        for index, hypothesis in enumerate(hypotheses):
            model_to_indices.setdefault(hypothesis.model, list()).append(index)
        # Hypotheses of the same model are verified together in batches of bounded size.
        batches = list()
        for model, indices in model_to_indices.items():
            batch_size = max(1, _VERIFICATION_BATCH_POINTS // model.get_number_of_octree_points())
            batches.extend((model, indices[i:i + batch_size]) for i in range(0, len(indices), batch_size))

        is_accepted = np.zeros(len(hypotheses), dtype=bool)
        for model, indices in tqdm.tqdm(batches,
                                        desc=f"{self.name}: Verification",
                                        file=sys.stdout,
                                        disable=not self.progress):
            model_points = model.octree.get_points()
            rigid_transforms = np.stack([hypotheses[index].rigid_transform for index in indices])
            points = (np.einsum("kij,mj->kmi", rigid_transforms[:, :9].reshape(-1, 3, 3), model_points)
                      + rigid_transforms[:, None, 9:])
            leaf_indices, is_illegal = self._explain_points(points.reshape(-1, 3))
            leaf_indices = leaf_indices.reshape(len(indices), len(model_points))
            is_explained = leaf_indices != -1
            match_confidences = np.count_nonzero(is_explained, axis=1) / len(model_points)
            illegal_fractions = np.count_nonzero(is_illegal.reshape(is_explained.shape), axis=1) / len(model_points)
            accepted = ((match_confidences > 0.0) & (match_confidences >= self.visibility)
                        & (illegal_fractions <= self.relative_num_of_illegal_pts))
            for row in np.flatnonzero(accepted).tolist():
                hypothesis = hypotheses[indices[row]]
                hypothesis.match_confidence = float(match_confidences[row])
                hypothesis.explained_support = set(leaf_indices[row, is_explained[row]].tolist())
                is_accepted[indices[row]] = True

        accepted_hypotheses = [hypothesis for hypothesis, accepted in zip(hypotheses, is_accepted) if accepted]
        logger.debug(f"{self.name}: Accepted {len(accepted_hypotheses)} of {len(hypotheses)} hypotheses in "
                     f"{time.time() - start}s.")
        return accepted_hypotheses

    def _filter_weak_hypotheses(self, graph: ConflictGraph, hypotheses: List[Hypothesis]) -> List[Output]:
        on_nodes, off_nodes = graph.compute_maximal_on_off_partition()
        logger.debug(f"{self.name}: Kept {len(on_nodes)} and discarded {len(off_nodes)} conflicting hypotheses.")
        recognized_objects = list()
        for node in on_nodes:
            hypothesis = hypotheses[node]
            recognized_objects.append(Output(object_name=hypothesis.model.object_name,
                                             rigid_transform=hypothesis.rigid_transform.copy(),
                                             match_confidence=hypothesis.match_confidence,
                                             user_data=hypothesis.model.user_data))
        return recognized_objects

    def get_sampled_oriented_point_pairs(self) -> List[OrientedPointPair]:
        return self._sampled_oriented_point_pairs

    def get_accepted_hypotheses(self) -> List[Hypothesis]:
        return self._accepted_hypotheses

    def get_hash_table(self) -> Octree:
        return self._model_library.get_hash_table()

    def get_model_library(self) -> ModelLibrary:
        return self._model_library

    def get_model(self, object_name: str) -> Union[Model, None]:
        return self._model_library.get_model(object_name)

    def get_scene_octree(self) -> PointCloudOctree:
        return self._scene_octree

    def get_scene_projection(self) -> OctreeZProjection:
        return self._scene_projection

    def get_transform_space(self) -> Union[TransformSpace, None]:
        return self._transform_space

    def get_pair_width(self) -> float:
        return self.pair_width
