"""RANSAC-based 3D object recognition in point clouds with oriented point pairs.

Files:
    __init__.py: This file.
    recognition.py: The object recognition algorithm.
    interfaces.py: Interfaces and base classes.
    octree.py: Spatial indices over point clouds and rotation/translation domains.
    model_library.py: Registered object models and the geometric hash table of their oriented point pairs.
    rotation_space.py: Voting structures clustering rigid transform votes.
    graph.py: Conflict graph over hypotheses.
    config.py: Construction of the object recognizer from configuration files.
    utils.py: Utility functions used throughout the project.

Classes:
    recognition.ObjectRecognitionRANSAC: The RANSAC-based object recognition algorithm.
    interfaces.RecognitionModes: Supported recognition modes.
    interfaces.OrientedPointPair: Two oriented scene points at (roughly) the pair width distance.
    interfaces.Hypothesis: A candidate pose of a model in the scene.
    interfaces.Output: A recognized object instance.
    octree.Octree: Fixed-resolution octree storing its full leaves only.
    octree.PointCloudOctree: Voxelized point cloud with normals.
    octree.OctreeZProjection: Projection of a point cloud octree onto the xy-plane.
    model_library.Model: A registered object model.
    model_library.ModelLibrary: Object models and their geometric hash table.
    rotation_space.RotationSpace: Octree over axis-angle vectors clustering rigid transform votes.
    rotation_space.TransformSpace: Octree over translations whose leaves own rotation spaces.
    graph.ConflictGraph: Graph of mutually exclusive hypotheses.
    graph.SupportConflictGraph: Conflict graph with edges given by overlapping explained supports.

Functions:
    get_logger: Returns the package-wide logger
    set_logger_level: Sets the package-wide logger level.
    recognition.compute_rigid_transform: Rigid transform mapping one oriented point pair onto another.
    recognition.compute_number_of_iterations: Number of RANSAC iterations for a given success probability.
    graph.build_conflict_graph: Builds the conflict graph of verified hypotheses.
    config.eval_config: Evaluates the options of a configuration file section.
    config.get_recognizer_from_config: Constructs the object recognizer from a configuration file section.
    utils.eval_point_cloud_data: Convenience function that evaluates point cloud data into point and normal arrays.
    utils.get_transformation_error: Computes the rotational and translational error between estimated and ground-truth
                                    transformation data.
    utils.compute_oriented_point_pair_signature: Rigid transform invariant descriptor of oriented point pairs.
    utils.tabulate_output: Renders recognition results as a table.
"""

import logging

logger = logging.getLogger(__name__)


def get_logger() -> logging.Logger:
    """Returns the package-wide logger.

    Returns:
        logging.Logger: The package-wide logger.
    """
    return logger


def set_logger_level(level: int) -> None:
    """Sets the package-wide logger level.

    Args:
        level (int): The logger level.
    """
    logger.setLevel(level=level)
