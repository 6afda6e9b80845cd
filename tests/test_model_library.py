"""Unittests for the model library module."""

import numpy as np
import pytest

from .context import model_library, utils


@pytest.fixture
def curved_patch():
    x, y = np.meshgrid(np.linspace(-0.5, 0.5, 26), np.linspace(-0.5, 0.5, 26))
    x, y = x.ravel(), y.ravel()
    z = 0.4 * x ** 2 - 0.3 * y ** 2 + 0.25 * x * y
    normals = utils.normalize(np.column_stack([0.8 * x + 0.25 * y, -0.6 * y + 0.25 * x, -np.ones_like(x)]))
    return np.column_stack([x, y, z]), normals


@pytest.fixture
def plane():
    x, y = np.meshgrid(np.linspace(-0.5, 0.5, 26), np.linspace(-0.5, 0.5, 26))
    points = np.column_stack([x.ravel(), y.ravel(), np.zeros(x.size)])
    return points, np.tile([0.0, 0.0, -1.0], (len(points), 1))


@pytest.fixture
def library():
    return model_library.ModelLibrary(pair_width=0.4, voxel_size=0.05)


class TestModelLibrary:

    def test_add_model(self, library, curved_patch):
        points, normals = curved_patch
        assert library.add_model(points, normals, object_name="patch", user_data={"id": 1})
        model = library.get_model("patch")
        assert model.object_name == "patch"
        assert model.user_data == {"id": 1}
        assert model.get_number_of_octree_points() > 0
        assert len(library) == 1
        assert library.get_hash_table().get_number_of_full_leaves() > 0

    def test_add_model_duplicate_name(self, library, curved_patch):
        points, normals = curved_patch
        assert library.add_model(points, normals, object_name="patch")
        num_leaves = library.get_hash_table().get_number_of_full_leaves()
        assert not library.add_model(points + 1.0, normals, object_name="patch")
        assert len(library) == 1
        assert library.get_hash_table().get_number_of_full_leaves() == num_leaves

    def test_hashed_pairs(self, library, curved_patch):
        points, normals = curved_patch
        library.add_model(points, normals, object_name="patch")
        model = library.get_model("patch")
        model_points = model.octree.get_points()
        model_normals = model.octree.get_normals()
        tolerance = 0.5 * np.sqrt(3.0) * library.voxel_size

        for leaf in library.get_hash_table().get_full_leaves()[:50]:
            pairs = np.asarray(leaf.data[model])
            assert np.all(pairs[:, 0] != pairs[:, 1])
            distances = np.linalg.norm(model_points[pairs[:, 1]] - model_points[pairs[:, 0]], axis=1)
            assert np.all(np.abs(distances - library.pair_width) <= tolerance + 1e-9)

            i, j = pairs[0]
            signature = utils.compute_oriented_point_pair_signature(model_points[i], model_normals[i],
                                                                    model_points[j], model_normals[j])
            cell = library.get_hash_table_cell(signature)
            assert (i, j) in cell[model]

    def test_coplanar_point_pairs(self, library, plane):
        points, normals = plane
        library.add_model(points, normals, object_name="plane")
        assert library.get_hash_table().get_number_of_full_leaves() == 0

        library.remove_all_models()
        library.ignore_coplanar_point_pairs_off()
        library.add_model(points, normals, object_name="plane")
        assert library.get_hash_table().get_number_of_full_leaves() > 0
        signature = np.array([np.pi / 2, np.pi / 2, 0.0])
        assert library.get_model("plane") in library.get_hash_table_cell(signature)

    def test_max_coplanarity_angle(self, library):
        library.set_max_coplanarity_angle_degrees(10.0)
        assert library.max_coplanarity_angle == pytest.approx(np.deg2rad(10.0))
        library.ignore_coplanar_point_pairs_off()
        assert not library.ignore_coplanar_opps
        library.ignore_coplanar_point_pairs_on()
        assert library.ignore_coplanar_opps

    def test_remove_all_models(self, library, curved_patch):
        points, normals = curved_patch
        library.add_model(points, normals, object_name="patch")
        library.remove_all_models()
        assert len(library) == 0
        assert library.get_model("patch") is None
        assert library.get_hash_table().get_number_of_full_leaves() == 0
        assert library.get_hash_table_cell(np.array([1.0, 1.0, 1.0])) is None
        assert library.add_model(points, normals, object_name="patch")

    def test_add_empty_model(self, library):
        with pytest.raises(ValueError):
            library.add_model(np.empty((0, 3)), np.empty((0, 3)), object_name="empty")
