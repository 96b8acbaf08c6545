# file handling
import datetime
import logging
from pathlib import Path

# general
import numpy as np
import pandas as pd
import yaml

from pubbias.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


def _convert_numpy(obj) -> dict | list | np.ndarray | float | int | str:
    """Convert numpy types to native Python types for safe YAML serialization.

    Args:
        obj: Object that might contain numpy data types

    Returns:
        Object with numpy types converted to Python native types
    """
    match obj:
        case dict():
            return {str(k): _convert_numpy(v) for k, v in obj.items()}
        case list() | tuple():
            return [_convert_numpy(i) for i in obj]
        case np.ndarray():
            return obj.tolist()
        case np.bool_():
            return bool(obj)
        case np.number():
            return obj.item()
        case Path():
            return str(obj)
        case _:
            return obj


def read_yaml(yaml_fp) -> dict:
    """Read in yaml file"""
    try:
        with open(yaml_fp, "r") as stream:
            return yaml.safe_load(stream) or {}
    except FileNotFoundError as e:
        raise ConfigurationError(f"Configuration file not found: {yaml_fp}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Could not parse {yaml_fp}: {e}") from e


def write_yaml(data: dict, fp="unnamed.yaml") -> None:
    """Safe writing to yaml files"""
    # convert numpy values to Python native types before serialization
    converted_data = _convert_numpy(data)
    with open(fp, "w") as file:
        yaml.safe_dump(converted_data, file, sort_keys=False)


def write_table(df: pd.DataFrame, fp, index: bool = True) -> Path:
    """Write a results table to csv, creating the parent directory if needed."""
    fp = Path(fp)
    fp.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(fp, index=index)
    logger.info(f"Table saved to {fp}")
    return fp


def ensure_r_package_imported(package_name: str):
    """Import an R package through rpy2, failing with a clear message if it is not installed."""
    import rpy2.robjects.packages as rpackages

    if not rpackages.isinstalled(package_name):
        raise ImportError(
            f"R package '{package_name}' is not installed. "
            f"Install it in R with install.packages('{package_name}')."
        )
    return rpackages.importr(package_name)


def get_now_timestamp_formatted():
    """Get a nicely-formatted timestamp for file naming."""
    return datetime.datetime.now().strftime("%Y-%m-%d--%H-%M-%S")
