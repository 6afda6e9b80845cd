"""Unittests for the utils module."""

import numpy as np
import open3d as o3d
import pytest

from .context import interfaces, utils


@pytest.fixture
def points():
    return np.random.default_rng(0).random(size=(1000, 3))


@pytest.fixture
def normals(points):
    return utils.normalize(np.random.default_rng(1).normal(size=points.shape))


@pytest.fixture
def point_cloud(points, normals):
    return utils.get_point_cloud_from_points(points, normals)


@pytest.fixture
def transformation_euler():
    return [[10.0, 30.0, 50.0], [100.0, 20.0, 50.0]]


class TestEvalPointCloudData:

    def test_eval_point_cloud_data_arrays(self, points, normals):
        _points, _normals = utils.eval_point_cloud_data(points=points, normals=normals)
        assert _points.shape == _normals.shape == (1000, 3)
        assert np.allclose(_points, points)

    def test_eval_point_cloud_data_point_cloud(self, point_cloud, points, normals):
        _points, _normals = utils.eval_point_cloud_data(points=point_cloud)
        assert np.allclose(_points, points)
        assert np.allclose(_normals, normals)

    def test_eval_point_cloud_data_six_columns(self, points, normals):
        _points, _normals = utils.eval_point_cloud_data(points=np.hstack([points, normals]))
        assert np.allclose(_points, points)
        assert np.allclose(_normals, normals)

    def test_eval_point_cloud_data_lists(self):
        _points, _normals = utils.eval_point_cloud_data(points=[[0, 0, 0], [1, 0, 0]],
                                                        normals=[[0, 0, 1], [0, 0, 1]])
        assert _points.dtype == np.float64
        assert _normals.shape == (2, 3)

    def test_eval_point_cloud_data_empty(self):
        _points, _normals = utils.eval_point_cloud_data(points=np.empty((0, 3)))
        assert _points.shape == _normals.shape == (0, 3)

    def test_eval_point_cloud_data_errors(self, points, normals):
        with pytest.raises(ValueError):
            utils.eval_point_cloud_data(points=points)
        with pytest.raises(ValueError):
            utils.eval_point_cloud_data(points=o3d.geometry.PointCloud(o3d.utility.Vector3dVector(points)))
        with pytest.raises(ValueError):
            utils.eval_point_cloud_data(points=points, normals=normals[:10])
        with pytest.raises(ValueError):
            utils.eval_point_cloud_data(points=points[:, :2], normals=normals[:, :2])
        with pytest.raises(TypeError):
            utils.eval_point_cloud_data(points="scene.ply", normals=normals)


class TestVectorMath:

    def test_normalize(self):
        vectors = utils.normalize([[3.0, 4.0, 0.0], [0.0, 0.0, 0.0]])
        assert np.allclose(vectors[0], [0.6, 0.8, 0.0])
        assert np.all(vectors[1] == 0.0)

    def test_project_on_plane(self, points):
        normal = utils.normalize([1.0, 2.0, 3.0])
        projected = utils.project_on_plane(points, normal)
        assert np.allclose(projected @ normal, 0.0)

    def test_vector_angle(self):
        assert np.isclose(utils.vector_angle([1.0, 0.0, 0.0], [0.0, 1.0, 0.0]), np.pi / 2)
        assert np.isclose(utils.vector_angle([1.0, 0.0, 0.0], [-1.0, 0.0, 0.0]), np.pi)
        # Dot products slightly outside [-1, 1] are clamped.
        assert utils.vector_angle([1.0, 0.0, 0.0], [1.0 + 1e-12, 0.0, 0.0]) == 0.0

    def test_points_are_coplanar(self):
        p1, n1 = np.zeros(3), np.array([0.0, 0.0, 1.0])
        p2 = np.array([1.0, 0.0, 0.0])
        max_angle = np.deg2rad(3.0)
        assert utils.points_are_coplanar(p1, n1, p2, n1, max_angle)
        tilted = np.array([np.sin(np.deg2rad(10.0)), 0.0, np.cos(np.deg2rad(10.0))])
        assert not utils.points_are_coplanar(p1, n1, p2, tilted, max_angle)
        assert not utils.points_are_coplanar(p1, n1, np.array([1.0, 0.0, 0.5]), n1, max_angle)

        batch = utils.points_are_coplanar(p1, n1, np.stack([p2, p2]), np.stack([n1, tilted]), max_angle)
        assert batch.tolist() == [True, False]


class TestSignature:

    @staticmethod
    def random_oriented_points(rng, size):
        return rng.uniform(-1.0, 1.0, size=(size, 3)), utils.normalize(rng.normal(size=(size, 3)))

    def test_signature_invariance(self):
        rng = np.random.default_rng(0)
        p1, n1 = self.random_oriented_points(rng, 100)
        p2, n2 = self.random_oriented_points(rng, 100)
        signatures = utils.compute_oriented_point_pair_signature(p1, n1, p2, n2)
        assert signatures.shape == (100, 3)
        assert np.all((signatures >= 0.0) & (signatures <= np.pi))

        T = utils.get_transformation_matrix_from_xyz(rotation_xyz=[40.0, -70.0, 125.0], translation_xyz=[1.0, 2.0, 3.0])
        R, t = T[:3, :3], T[:3, 3]
        transformed = utils.compute_oriented_point_pair_signature(p1 @ R.T + t, n1 @ R.T, p2 @ R.T + t, n2 @ R.T)
        assert np.allclose(signatures, transformed, atol=1e-9)

    def test_signature_single_pair(self):
        signature = utils.compute_oriented_point_pair_signature(p1=[0.0, 0.0, 0.0],
                                                                n1=[0.0, 0.0, 1.0],
                                                                p2=[1.0, 0.0, 0.0],
                                                                n2=[1.0, 0.0, 0.0])
        assert signature.shape == (3,)
        assert np.allclose(signature, [np.pi / 2, np.pi, np.pi / 2])

    def test_signature_swapped_points(self):
        rng = np.random.default_rng(1)
        p1, n1 = self.random_oriented_points(rng, 10)
        p2, n2 = self.random_oriented_points(rng, 10)
        signatures = utils.compute_oriented_point_pair_signature(p1, n1, p2, n2)
        swapped = utils.compute_oriented_point_pair_signature(p2, n2, p1, n1)
        assert np.allclose(signatures[:, [1, 0, 2]], swapped)

    def test_signature_one_to_many(self):
        rng = np.random.default_rng(2)
        p2, n2 = self.random_oriented_points(rng, 5)
        signatures = utils.compute_oriented_point_pair_signature(p2[0], n2[0], p2[1:], n2[1:])
        assert signatures.shape == (4, 3)
        for i in range(1, 5):
            assert np.allclose(signatures[i - 1], utils.compute_oriented_point_pair_signature(p2[0], n2[0], p2[i], n2[i]))


class TestAxisAngle:

    def test_axis_angle_round_trip(self):
        rng = np.random.default_rng(42)
        for _ in range(20):
            axis_angle = utils.normalize(rng.normal(size=3)) * rng.uniform(0.0, np.pi - 1e-3)
            R = utils.get_rotation_matrix_from_axis_angle(axis_angle)
            assert np.allclose(R @ R.T, np.eye(3))
            assert np.allclose(utils.get_axis_angle_from_rotation_matrix(R), axis_angle, atol=1e-6)

    def test_axis_angle_identity(self):
        assert np.allclose(utils.get_axis_angle_from_rotation_matrix(np.eye(3)), 0.0)

    def test_axis_angle_close_to_pi(self):
        for axis in [[1.0, 0.0, 0.0], [0.0, 1.0, 1.0], [-1.0, 2.0, 0.5]]:
            R = utils.get_rotation_matrix_from_axis_angle(utils.normalize(axis) * np.pi)
            axis_angle = utils.get_axis_angle_from_rotation_matrix(R)
            assert np.isclose(np.linalg.norm(axis_angle), np.pi)
            assert np.allclose(utils.get_rotation_matrix_from_axis_angle(axis_angle), R, atol=1e-6)

    def test_axis_angle_from_row_major_values(self):
        R = utils.get_transformation_matrix_from_xyz(rotation_xyz=[0.0, 0.0, 90.0])[:3, :3]
        axis_angle = utils.get_axis_angle_from_rotation_matrix(R.ravel())
        assert np.allclose(axis_angle, [0.0, 0.0, np.pi / 2])

    def test_axis_angle_batch(self):
        rng = np.random.default_rng(7)
        axis_angles = utils.normalize(rng.normal(size=(50, 3))) * rng.uniform(0.0, np.pi - 1e-3, size=(50, 1))
        rotations = np.stack([utils.get_rotation_matrix_from_axis_angle(axis_angle) for axis_angle in axis_angles])
        assert np.allclose(utils.get_axis_angle_from_rotation_matrix(rotations), axis_angles, atol=1e-6)
        assert np.allclose(utils.get_axis_angle_from_rotation_matrix(rotations.reshape(50, 9)), axis_angles, atol=1e-6)
        assert utils.get_axis_angle_from_rotation_matrix(rotations[:1].reshape(1, 9)).shape == (1, 3)
        assert utils.get_axis_angle_from_rotation_matrix(np.empty((0, 9))).shape == (0, 3)


class TestEvalTransformationData:

    def test_eval_transformation_data_rigid_transform(self):
        T = utils.get_transformation_matrix_from_xyz(rotation_xyz=[10.0, 20.0, 30.0], translation_xyz=[1.0, 2.0, 3.0])
        rigid_transform = utils.get_rigid_transform_from_transformation(T)
        assert rigid_transform.shape == (12,)
        assert np.allclose(utils.eval_transformation_data(rigid_transform), T)

    def test_eval_transformation_data_euler(self, transformation_euler):
        T = utils.eval_transformation_data(transformation_euler)
        assert np.allclose(T[:3, 3], transformation_euler[1])
        assert np.allclose(T, utils.get_transformation_matrix_from_xyz(*transformation_euler))

    def test_eval_transformation_data_shapes(self):
        assert np.allclose(utils.eval_transformation_data(np.eye(4)), np.eye(4))
        assert np.allclose(utils.eval_transformation_data(np.eye(3)), np.eye(4))
        assert np.allclose(utils.eval_transformation_data([1.0, 2.0, 3.0])[:3, 3], [1.0, 2.0, 3.0])
        assert np.allclose(utils.eval_transformation_data([np.eye(3), [1.0, 2.0, 3.0]])[:3, 3], [1.0, 2.0, 3.0])
        with pytest.raises(ValueError):
            utils.eval_transformation_data([1.0, 2.0, 3.0, 4.0, 5.0])
        with pytest.raises(TypeError):
            utils.eval_transformation_data("identity")


class TestTransformationError:

    def test_transformation_error_identical(self, transformation_euler):
        error_rot, error_trans = utils.get_transformation_error(transformation_euler, transformation_euler)
        assert error_rot == pytest.approx(0.0, abs=1e-5)
        assert error_trans == pytest.approx(0.0)

    def test_transformation_error(self):
        T_est = utils.get_transformation_matrix_from_xyz(rotation_xyz=[0.0, 0.0, 10.0], translation_xyz=[0.0, 0.3, 0.4])
        error_rot, error_trans = utils.get_transformation_error(T_est, np.eye(4))
        assert error_rot == pytest.approx(10.0)
        assert error_trans == pytest.approx(0.5)
        error_rad, _ = utils.get_transformation_error(T_est, np.eye(4), in_degrees=False)
        assert error_rad == pytest.approx(np.deg2rad(10.0))


def test_tabulate_output():
    rigid_transform = utils.get_rigid_transform_from_transformation([[0.0, 0.0, 45.0], [1.0, 2.0, 3.0]])
    output = interfaces.Output(object_name="mug", rigid_transform=rigid_transform, match_confidence=0.75)
    table = utils.tabulate_output([output])
    assert "mug" in table
    assert "0.75" in table
    assert "45" in table
