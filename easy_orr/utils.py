"""Utility functions used throughout the project.

Functions:
    eval_point_cloud_data: Convenience function that evaluates point cloud data into point and normal arrays.
    get_point_cloud_from_points: Convenience function to obtain point clouds from points and normals.
    normalize: Scales vectors to unit length.
    project_on_plane: Projects vectors onto the planes orthogonal to the given unit normals.
    vector_angle: Computes the angle between unit vectors.
    points_are_coplanar: Checks whether oriented points lie on a common plane.
    compute_oriented_point_pair_signature: Rigid transform invariant descriptor of oriented point pairs.
    get_rotation_matrix_from_axis_angle: Converts an axis-angle vector into a 3x3 rotation matrix.
    get_axis_angle_from_rotation_matrix: Converts rotation matrices into axis-angle vectors.
    eval_transformation_data: Evaluates different types of transformation data to obtain a 4x4 transformation matrix.
    get_rigid_transform_from_transformation: Converts transformation data into the 12 value rigid transform layout.
    get_transformation_matrix_from_xyz: Constructs a 4x4 homogenous transformation matrix from a XYZ translation vector
                                        and XYZ Euler angles.
    get_transformation_error: Computes the rotational and translational error between estimated and ground-truth
                              transformation data.
    get_rotation_error: Computes the error between estimated and ground-truth rotation in degrees or radians.
    get_translation_error: Computes the euclidean error between estimated and ground-truth translation.
    tabulate_output: Renders recognition results as a table.
"""
import logging
import math
from typing import Any, List, Union, Tuple

import numpy as np
import open3d as o3d
import tabulate
from scipy.spatial.transform import Rotation

PointCloud = o3d.geometry.PointCloud

InputTypes = Union[PointCloud, np.ndarray, List[List[float]]]
TransformationTypes = Union[np.ndarray, List[float], List[List[float]]]

logger = logging.getLogger(__name__)


def eval_point_cloud_data(points: InputTypes,
                          normals: Union[np.ndarray, List[List[float]], None] = None) -> Tuple[np.ndarray, np.ndarray]:
    """Convenience function that evaluates point cloud data into point and normal arrays.

    Normals are not re-normalized: providing unit length normals is the responsibility of the caller.

    Args:
        points: An Open3D point cloud, a Nx3 array of points or a Nx6 array of points and normals.
        normals: A Nx3 array of normals. Taken from `points` if not provided.

    Returns:
        The Nx3 points and the Nx3 normals as float arrays.
    """
    if isinstance(points, PointCloud):
        logger.debug("Data is point cloud. Extracting points and normals.")
        _points = np.asarray(points.points, dtype=np.float64)
        if normals is None and points.has_normals():
            normals = np.asarray(points.normals)
    elif isinstance(points, (np.ndarray, list, tuple)):
        _points = np.asarray(points, dtype=np.float64)
        if normals is None and _points.ndim == 2 and _points.shape[1] == 6:
            logger.debug("Data has six columns. Interpreting as points and normals.")
            _points, normals = _points[:, :3], _points[:, 3:]
    else:
        raise TypeError(f"Can't process data of type {type(points)}.")

    if normals is None:
        if _points.size == 0:
            return np.empty((0, 3)), np.empty((0, 3))
        raise ValueError("Point cloud data needs normals. Normal estimation is up to the caller.")
    _normals = np.asarray(normals, dtype=np.float64)

    if _points.size == 0 and _normals.size == 0:
        return np.empty((0, 3)), np.empty((0, 3))
    if _points.ndim != 2 or _points.shape[1] != 3:
        raise ValueError(f"Point data must be of shape Nx3 (xyz) or Nx6 (normals) but is {_points.shape}.")
    if _normals.shape != _points.shape:
        raise ValueError(f"Normals must have the same shape as the points ({_points.shape}) but have "
                         f"shape {_normals.shape}.")
    return _points, _normals


def get_point_cloud_from_points(points: np.ndarray, normals: Union[np.ndarray, None] = None) -> PointCloud:
    """Convenience function to obtain point clouds from points.

    Args:
        points: A Nx3 array of vertex coordinates.
        normals: An optional Nx3 array of vertex normals.

    Returns:
        The point cloud created from the points.
    """
    point_cloud = PointCloud(o3d.utility.Vector3dVector(np.asarray(points, dtype=np.float64)))
    if normals is not None:
        point_cloud.normals = o3d.utility.Vector3dVector(np.asarray(normals, dtype=np.float64))
    return point_cloud


def normalize(vectors: np.ndarray) -> np.ndarray:
    """Scales vectors to unit length. Zero vectors are left untouched.

    Args:
        vectors: A single vector of shape (3,) or a batch of shape (..., 3).

    Returns:
        The normalized vectors.
    """
    _vectors = np.asarray(vectors, dtype=np.float64)
    norm = np.linalg.norm(_vectors, axis=-1, keepdims=True)
    return _vectors / np.where(norm > 0.0, norm, 1.0)


def project_on_plane(vectors: np.ndarray, plane_normals: np.ndarray) -> np.ndarray:
    """Projects `vectors` onto the planes orthogonal to the unit vectors `plane_normals`.

    Args:
        vectors: The vectors to project, shape (3,) or (..., 3).
        plane_normals: Unit plane normals, broadcastable against `vectors`.

    Returns:
        The projected vectors.
    """
    _vectors = np.asarray(vectors, dtype=np.float64)
    _normals = np.asarray(plane_normals, dtype=np.float64)
    return _vectors - np.sum(_vectors * _normals, axis=-1, keepdims=True) * _normals


def vector_angle(a: np.ndarray, b: np.ndarray) -> Union[float, np.ndarray]:
    """Computes the angle between unit vectors `a` and `b`.

    The dot product is clamped to [-1, 1] to avoid invalid values due to numerical errors.

    Args:
        a: Unit vector(s) of shape (3,) or (..., 3).
        b: Unit vector(s) broadcastable against `a`.

    Returns:
        The angle(s) in radians.
    """
    dot = np.sum(np.asarray(a, dtype=np.float64) * np.asarray(b, dtype=np.float64), axis=-1)
    return np.arccos(np.clip(dot, -1.0, 1.0))


def points_are_coplanar(p1: np.ndarray,
                        n1: np.ndarray,
                        p2: np.ndarray,
                        n2: np.ndarray,
                        max_angle: float) -> Union[bool, np.ndarray]:
    """Checks whether the oriented points (p1, n1) and (p2, n2) lie on a common plane.

    This is the case if the normals are (almost) parallel and the line between the points is (almost) orthogonal to
    the first normal. Accepts single points or batches.

    Args:
        p1: First point(s).
        n1: Unit normal(s) at `p1`.
        p2: Second point(s).
        n2: Unit normal(s) at `p2`.
        max_angle: The maximum deviation from a perfect plane in radians.

    Returns:
        `True` where the points are co-planar.
    """
    line = normalize(np.asarray(p2, dtype=np.float64) - np.asarray(p1, dtype=np.float64))
    parallel_normals = vector_angle(n1, n2) <= max_angle
    orthogonal_line = np.abs(vector_angle(line, n1) - 0.5 * np.pi) <= max_angle
    return parallel_normals & orthogonal_line


def compute_oriented_point_pair_signature(p1: np.ndarray,
                                          n1: np.ndarray,
                                          p2: np.ndarray,
                                          n2: np.ndarray) -> np.ndarray:
    """Computes the geometric signature of oriented point pairs.

    The signature consists of the angle between `n1` and the line from `p1` to `p2`, the angle between `n2` and the
    reversed line and the angle between the normals. It is invariant under rigid transforms.

    Args:
        p1: First point(s), shape (3,) or (N, 3).
        n1: Unit normal(s) at `p1`.
        p2: Second point(s).
        n2: Unit normal(s) at `p2`.

    Returns:
        The signature(s), shape (3,) or (N, 3), with all angles in [0, pi].
    """
    line = normalize(np.asarray(p2, dtype=np.float64) - np.asarray(p1, dtype=np.float64))
    return np.stack([vector_angle(n1, line), vector_angle(n2, -line), vector_angle(n1, n2)], axis=-1)


def get_rotation_matrix_from_axis_angle(axis_angle: Union[np.ndarray, List[float]]) -> np.ndarray:
    """Converts an axis-angle vector (the axis scaled by the rotation angle in radians) into a rotation matrix.

    Args:
        axis_angle: The axis-angle vector.

    Returns:
        The 3x3 rotation matrix.
    """
    return PointCloud.get_rotation_matrix_from_axis_angle(np.asarray(axis_angle, dtype=np.float64).reshape(3, 1))


def get_axis_angle_from_rotation_matrix(rotation: Union[np.ndarray, List[float]]) -> np.ndarray:
    """Converts rotation matrices into axis-angle vectors.

    Accepts a single rotation (3x3 or 9 values in row-major order) or a batch (Nx3x3 or Nx9). The angles of the
    returned vectors lie in [0, pi].

    Args:
        rotation: The rotation matrix or matrices.

    Returns:
        The axis-angle vector of shape (3,) or the Nx3 axis-angle vectors.
    """
    R = np.asarray(rotation, dtype=np.float64)
    if R.ndim == 1 or R.shape == (3, 3):
        return Rotation.from_matrix(R.reshape(3, 3)).as_rotvec()
    if len(R) == 0:
        return np.empty((0, 3))
    return Rotation.from_matrix(R.reshape(-1, 3, 3)).as_rotvec()


def eval_transformation_data(transformation_data: TransformationTypes) -> np.ndarray:
    """Evaluates different types of transformation data to obtain a 4x4 transformation matrix.

    Supported are translations (3 values), rotation matrices (9 values), rigid transforms as returned by the
    recognition (12 values: row-major rotation followed by the translation), homogeneous matrices (16 values) and
    pairs of XYZ Euler angles in degrees or rotation matrix and translation.

    Args:
        transformation_data: Array or list(s) containing transformation (rotation, translation) data.

    Returns:
        A 4x4 transformation matrix.
    """
    if isinstance(transformation_data, (list, tuple)) and len(transformation_data) == 2:
        rotation, translation = (np.asarray(data, dtype=np.float64).ravel() for data in transformation_data)
        if rotation.size == 3 and translation.size >= 3:
            return get_transformation_matrix_from_xyz(rotation_xyz=rotation, translation_xyz=translation)
        elif rotation.size == 9 and translation.size >= 3:
            T = np.eye(4)
            T[:3, :3] = rotation.reshape(3, 3)
            T[:3, 3] = translation[:3]
            return T
        raise ValueError(f"Transformation needs 3 or 9 rotation values and 3 or 4 translation values.")
    elif isinstance(transformation_data, (np.ndarray, list, tuple)):
        data = np.asarray(transformation_data, dtype=np.float64)
    else:
        raise TypeError(f"Transformation data of unsupported type {type(transformation_data)}.")

    T = np.eye(4)
    if data.size == 16:
        return data.reshape(4, 4)
    elif data.size == 12:
        T[:3, :3] = data.ravel()[:9].reshape(3, 3)
        T[:3, 3] = data.ravel()[9:]
    elif data.size == 9:
        T[:3, :3] = data.reshape(3, 3)
    elif data.size == 3:
        T[:3, 3] = data.ravel()
    else:
        raise ValueError(f"Transformation data needs 3, 9, 12 or 16 values but has {data.size}.")
    return T


def get_rigid_transform_from_transformation(transformation_data: TransformationTypes) -> np.ndarray:
    """Converts transformation data into 12 values: the row-major rotation followed by the translation.

    Args:
        transformation_data: Any data accepted by `eval_transformation_data`.

    Returns:
        The rigid transform as array of 12 values.
    """
    T = eval_transformation_data(transformation_data)
    return np.concatenate([T[:3, :3].ravel(), T[:3, 3]])


def get_transformation_matrix_from_xyz(rotation_xyz: Union[np.ndarray, list] = np.zeros(3),
                                       translation_xyz: Union[np.ndarray, list] = np.zeros(3)) -> np.ndarray:
    """Constructs a 4x4 homogenous transformation matrix from a XYZ translation vector and XYZ Euler angles.

    Args:
        rotation_xyz: The XYZ Euler angles in degrees.
        translation_xyz: The XYZ translation vector.

    Returns:
        The 4x4 homogenous transformation matrix.
    """
    rotation = np.radians(np.asarray(rotation_xyz, dtype=np.float64).ravel()[:3])
    T = np.eye(4)
    T[:3, :3] = PointCloud.get_rotation_matrix_from_xyz(rotation.reshape(3, 1))
    T[:3, 3] = np.asarray(translation_xyz, dtype=np.float64).ravel()[:3]
    return T


def get_transformation_error(transformation_estimate: TransformationTypes,
                             transformation_ground_truth: TransformationTypes,
                             in_degrees: bool = True) -> Tuple[float, float]:
    """Computes the rotational and translational error between estimated and ground-truth transformation data.

    Args:
        transformation_estimate: The estimated transformation.
        transformation_ground_truth: The ground-truth transformation.
        in_degrees: Return rotational error in degrees instead of radians.

    Returns:
        Rotational and translation error between estimated and ground-truth transformation.
    """
    T_est = eval_transformation_data(transformation_estimate)
    T_gt = eval_transformation_data(transformation_ground_truth)
    error_rot = get_rotation_error(rotation_estimate=T_est[:3, :3],
                                   rotation_ground_truth=T_gt[:3, :3],
                                   in_degrees=in_degrees)
    error_trans = get_translation_error(translation_estimate=T_est[:3, 3],
                                        translation_ground_truth=T_gt[:3, 3])
    return error_rot, error_trans


def get_rotation_error(rotation_estimate: np.ndarray,
                       rotation_ground_truth: np.ndarray,
                       in_degrees: bool = True) -> float:
    """Computes the error between estimated and ground-truth rotation in degrees or radians.

    Args:
        rotation_estimate: The estimated rotation.
        rotation_ground_truth: The ground-truth rotation.
        in_degrees: Return rotational error in degrees instead of radians.

    Returns:
        Error between estimated and ground-truth rotation in degrees or radians.
    """
    assert (rotation_estimate.shape == rotation_ground_truth.shape == (3, 3)),\
        f"Rotation estimate and ground truth both need to have shape (3, 3) but are {rotation_estimate.shape} and " \
        f"{rotation_ground_truth.shape}."
    error_cos = 0.5 * (np.trace(rotation_estimate @ rotation_ground_truth.T) - 1.0)

    # Avoid invalid values due to numerical errors.
    error_cos = min(1.0, max(-1.0, error_cos))

    error_rad = math.acos(error_cos)
    if in_degrees:
        return float(np.rad2deg(error_rad))
    return error_rad


def get_translation_error(translation_estimate: np.ndarray, translation_ground_truth: np.ndarray) -> float:
    """Computes the euclidean error between estimated and ground-truth translation.

    Args:
        translation_estimate: The estimated translation.
        translation_ground_truth: The ground-truth translation.

    Returns:
        Euclidean distance between estimated and ground-truth translation.
    """
    assert (translation_estimate.size == translation_ground_truth.size == 3),\
        f"Translation estimate and ground truth need to have size 3 but have {translation_estimate.size} and " \
        f"{translation_ground_truth.size}."
    return float(np.linalg.norm(translation_ground_truth - translation_estimate))


def tabulate_output(outputs: List[Any], tablefmt: str = "simple") -> str:
    """Renders recognition results as a table.

    Args:
        outputs: The recognition results (objects with `object_name`, `rigid_transform` and `match_confidence`).
        tablefmt: The `tabulate` table format.

    Returns:
        The rendered table.
    """
    rows = list()
    for output in outputs:
        rigid_transform = np.asarray(output.rigid_transform).ravel()
        angle = np.linalg.norm(get_axis_angle_from_rotation_matrix(rigid_transform[:9]))
        rows.append([output.object_name,
                     round(float(output.match_confidence), 3),
                     np.round(rigid_transform[9:], 4).tolist(),
                     round(float(np.rad2deg(angle)), 2)])
    return tabulate.tabulate(rows,
                             headers=["Object", "Confidence", "Translation", "Rotation [deg]"],
                             tablefmt=tablefmt)
