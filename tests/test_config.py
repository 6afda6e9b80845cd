"""Unittests for the config module."""

import configparser

import numpy as np
import pytest

from .context import config, interfaces


@pytest.fixture
def recognition_ini():
    return """
[recognition]
pair_width = 0.04
voxel_size = 0.004
visibility = 0.3
position_discretization = none
ignore_coplanar_opps = off
seed = 3
mode = test_hypotheses

[other]
pair_width = 0.04
"""


@pytest.fixture
def parser(recognition_ini):
    _parser = configparser.ConfigParser()
    _parser.read_string(recognition_ini)
    return _parser


class TestEvalConfig:

    def test_eval_config(self, parser):
        config_dict = config.eval_config(parser)
        assert config_dict["pair_width"] == pytest.approx(0.04)
        assert config_dict["seed"] == 3
        assert isinstance(config_dict["seed"], int)
        assert config_dict["position_discretization"] is None
        assert config_dict["ignore_coplanar_opps"] is False
        assert config_dict["mode"] == interfaces.RecognitionModes.TEST_HYPOTHESES

    def test_eval_config_errors(self, parser):
        with pytest.raises(ValueError):
            config.eval_config(parser, section="missing")
        parser.set("recognition", "mode", "unknown")
        with pytest.raises(ValueError):
            config.eval_config(parser)

    def test_format_config_dict(self, parser):
        table = config.format_config_dict(config.eval_config(parser))
        assert "Pair width" in table
        assert "0.004" in table


class TestGetRecognizerFromConfig:

    def test_get_recognizer_from_config(self, parser):
        recognizer = config.get_recognizer_from_config(parser)
        assert recognizer.pair_width == pytest.approx(0.04)
        assert recognizer.voxel_size == pytest.approx(0.004)
        assert recognizer.visibility == pytest.approx(0.3)
        assert recognizer.position_discretization is None
        assert recognizer.abs_zdist_thresh == pytest.approx(0.006)
        assert recognizer.max_coplanarity_angle == pytest.approx(np.deg2rad(3.0))
        assert not recognizer.ignore_coplanar_opps
        assert recognizer.rec_mode == interfaces.RecognitionModes.TEST_HYPOTHESES

    def test_get_recognizer_from_config_missing_option(self, parser):
        with pytest.raises(ValueError):
            config.get_recognizer_from_config(parser, section="other")
