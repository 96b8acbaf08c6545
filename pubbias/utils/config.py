from pathlib import Path


def get_repo_root() -> Path:
    """Get the root directory of the repository (the parent of the package)."""
    return Path(__file__).resolve().parents[2]


# REPO DIRECTORIES
repo_dir = get_repo_root()
resources_dir = repo_dir / "resources"
module_dir = repo_dir / "pubbias"
fig_dir = repo_dir / "figures"
results_dir = repo_dir / "results"

# DATA DIRECTORIES
data_dir = repo_dir / "data"
example_data_fp = data_dir / "latitude_subsidy_example.csv"
default_config_fp = resources_dir / "config.yaml"
