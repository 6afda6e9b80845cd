"""Construction of the object recognizer from configuration files.

A configuration section holds the constructor arguments of `ObjectRecognitionRANSAC` plus the optional `mode` option
(`full_recognition`, `sample_opp` or `test_hypotheses`), e.g.:

    [recognition]
    pair_width = 0.04
    voxel_size = 0.004
    position_discretization = none
    mode = test_hypotheses

Functions:
    eval_config: Evaluates the data types of the options of a ConfigParser section.
    format_config_dict: Renders a config dict created by `eval_config` as a table.
    get_recognizer_from_config: Constructs the object recognizer from a ConfigParser section.
"""
import ast
import configparser
import logging
from typing import Any, Dict

import tabulate

from .interfaces import RecognitionModes
from .recognition import ObjectRecognitionRANSAC

logger = logging.getLogger(__name__)


def eval_config(config: configparser.ConfigParser, section: str = "recognition") -> Dict[str, Any]:
    """Evaluates the data types of the options of a ConfigParser section.

    Python literals are evaluated, `none` becomes `None`, `on`/`off`/`yes`/`no` become booleans and the `mode` option
    is mapped to `RecognitionModes`. Anything else is kept as string.

    Args:
        config: A ConfigParser object.
        section: The section to evaluate.

    Returns:
        A dict with the options of `section` and their evaluated values.
    """
    if not config.has_section(section):
        raise ValueError(f"Config has no section '{section}'. Available sections: {config.sections()}.")
    config_dict = dict()
    for option, value in config.items(section):
        try:
            value = ast.literal_eval(value)
        except (ValueError, SyntaxError):
            if value.lower() == "none":
                value = None
            elif value.lower() in ["on", "off", "yes", "no"]:
                value = config.getboolean(section, option)
            elif option.lower() == "mode":
                if value.lower() in ["sample_opp", "sample"]:
                    value = RecognitionModes.SAMPLE_OPP
                elif value.lower() in ["test_hypotheses", "test"]:
                    value = RecognitionModes.TEST_HYPOTHESES
                elif value.lower() in ["full_recognition", "full"]:
                    value = RecognitionModes.FULL_RECOGNITION
                else:
                    raise ValueError(f"Unknown recognition mode '{value}'.")
        config_dict[option] = value
    return config_dict


def format_config_dict(config_dict: Dict[str, Any], pretty: bool = True) -> str:
    """Renders a config dict created by `eval_config` as a table.

    Args:
        config_dict: A config dict created by `eval_config`.
        pretty: Pretty-print the option names.

    Returns:
        The rendered table.
    """
    config_list = list()
    for key, value in config_dict.items():
        config_list.append((key.capitalize().replace('_', ' ') if pretty else key, str(value)))
    return tabulate.tabulate(config_list)


def get_recognizer_from_config(config: configparser.ConfigParser,
                               section: str = "recognition") -> ObjectRecognitionRANSAC:
    """Constructs the object recognizer from a ConfigParser section.

    Args:
        config: A ConfigParser object.
        section: The section holding the recognizer options.

    Returns:
        The object recognizer in the configured mode.
    """
    config_dict = eval_config(config=config, section=section)
    logger.debug(f"Recognizer config:\n{format_config_dict(config_dict)}")
    for option in ["pair_width", "voxel_size"]:
        if option not in config_dict:
            raise ValueError(f"Config section '{section}' needs the option '{option}'.")

    mode = config_dict.pop("mode", RecognitionModes.FULL_RECOGNITION)
    recognizer = ObjectRecognitionRANSAC(**config_dict)
    if mode == RecognitionModes.SAMPLE_OPP:
        recognizer.enter_test_mode_sample_opp()
    elif mode == RecognitionModes.TEST_HYPOTHESES:
        recognizer.enter_test_mode_test_hypotheses()
    return recognizer
