"""Interfaces and base classes.

Classes:
    RecognitionModes: Supported recognition modes.
    OrientedPointPair: Two oriented scene points at (roughly) the pair width distance.
    Hypothesis: A candidate pose of a model in the scene.
    Output: A recognized object instance.
    RecognitionInterface: Interface for all recognition classes.
"""
import logging
import sys
from abc import ABC, abstractmethod
from typing import Any, List, Union, Tuple
from enum import Flag, auto

import numpy as np
import tqdm

from .utils import InputTypes, eval_point_cloud_data, eval_transformation_data

logger = logging.getLogger(__name__)


class RecognitionModes(Flag):
    """Supported recognition modes. The test modes stop the recognition early and keep intermediate results."""
    SAMPLE_OPP = auto()
    TEST_HYPOTHESES = auto()
    FULL_RECOGNITION = auto()


class OrientedPointPair:
    """Two oriented scene points. Arrays are shared with the scene octree and must not be modified."""

    def __init__(self, p1: np.ndarray, n1: np.ndarray, p2: np.ndarray, n2: np.ndarray) -> None:
        self.p1 = p1
        self.n1 = n1
        self.p2 = p2
        self.n2 = n2


class Hypothesis:
    """A candidate pose of a model in the scene.

    Attributes:
        model: The hypothesized model (a reference to the model owned by the model library).
        rigid_transform: 12 values, the row-major 3x3 rotation followed by the translation.
        match_confidence: Fraction of explained model points. -1 until the hypothesis has been verified.
        explained_support: Indices of the scene octree leaves explained by the transformed model.
        rotation_3d_id: Id of the rotation space cell the hypothesis was averaged from, if recorded.
        translation_3d_id: Id of the translation cell the hypothesis was averaged from, if recorded.
    """

    def __init__(self, model: Any, rigid_transform: Union[np.ndarray, None] = None) -> None:
        self.model = model
        if rigid_transform is None:
            self.rigid_transform = np.zeros(12)
        else:
            self.rigid_transform = np.asarray(rigid_transform, dtype=np.float64).ravel()
        self.match_confidence = -1.0
        self.explained_support = set()
        self.rotation_3d_id = None
        self.translation_3d_id = None

    @property
    def rotation(self) -> np.ndarray:
        return self.rigid_transform[:9].reshape(3, 3)

    @property
    def translation(self) -> np.ndarray:
        return self.rigid_transform[9:]


class Output:
    """A recognized object instance.

    Attributes:
        object_name: The name of the recognized model.
        rigid_transform: 12 values, the row-major 3x3 rotation followed by the translation mapping the model into the
                         scene.
        match_confidence: Fraction of the model surface matched in the scene, in (0, 1].
        user_data: The data registered with the model.
    """

    def __init__(self,
                 object_name: str,
                 rigid_transform: np.ndarray,
                 match_confidence: float,
                 user_data: Any = None) -> None:
        self.object_name = object_name
        self.rigid_transform = rigid_transform
        self.match_confidence = match_confidence
        self.user_data = user_data

    @property
    def transformation(self) -> np.ndarray:
        """The 4x4 homogeneous transformation matrix."""
        return eval_transformation_data(self.rigid_transform)


class RecognitionInterface(ABC):
    """Interface for recognition subclasses. Handles input evaluation.

    Attributes:
        name: The name of the recognition algorithm.
        progress: Show progress bars.

    Methods:
        _eval_data(data, normals): Evaluates point cloud data into point and normal arrays.
        recognize(scene, normals, ...): Runs the recognition algorithm of the derived class. Must be overwritten.
        recognize_many(scenes, ...): Convenience function to run the recognition on multiple scenes.
    """

    def __init__(self, name: str, progress: bool = False) -> None:
        """
        Args:
            name: The name of the recognition algorithm.
            progress: Show progress bars.
        """
        self.name = name
        self.progress = progress

    def _eval_data(self,
                   data: InputTypes,
                   normals: Union[np.ndarray, List[List[float]], None] = None) -> Tuple[np.ndarray, np.ndarray]:
        """Evaluates point cloud data into point and normal arrays.

        Args:
            data: An Open3D point cloud, a Nx3 array of points or a Nx6 array of points and normals.
            normals: A Nx3 array of normals. Taken from `data` if not provided.

        Returns:
            The Nx3 points and the Nx3 normals.
        """
        points, _normals = eval_point_cloud_data(points=data, normals=normals)
        logger.debug(f"{self.name}: Evaluated {len(points)} points.")
        return points, _normals

    @abstractmethod
    def recognize(self,
                  scene: InputTypes,
                  normals: Union[np.ndarray, List[List[float]], None] = None,
                  success_probability: float = 0.99,
                  **kwargs: Any) -> List[Output]:
        """Runs the recognition algorithm of the derived class.

        Args:
            scene: The scene data.
            normals: The scene normals, if not part of `scene`.
            success_probability: The desired probability of recognizing each object present in the scene.

        Raises:
            NotImplementedError: A derived class should implement this method.

        Returns:
            The recognized object instances.
        """
        raise NotImplementedError("A derived class should implement this method.")

    def recognize_many(self,
                       scenes: List[InputTypes],
                       normals: Union[List[Union[np.ndarray, None]], None] = None,
                       success_probability: float = 0.99,
                       **kwargs: Any) -> List[List[Output]]:
        """Convenience function to run the recognition on multiple scenes one after another.

        Args:
            scenes: The scene data.
            normals: The scene normals, one entry per scene (`None` for scenes with normals).
            success_probability: The desired probability of recognizing each object present in the scene.

        Returns:
            The recognized object instances per scene.
        """
        _normals = [None] * len(scenes) if normals is None else normals
        if len(_normals) != len(scenes):
            raise ValueError(f"Need one normals entry per scene but got {len(_normals)} for {len(scenes)} scenes.")
        results = list()
        for scene, scene_normals in tqdm.tqdm(zip(scenes, _normals),
                                              desc=f"{self.name}: Recognition",
                                              total=len(scenes),
                                              file=sys.stdout,
                                              disable=not self.progress):
            results.append(self.recognize(scene, scene_normals, success_probability, **kwargs))
        return results
