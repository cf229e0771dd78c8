from importlib.metadata import PackageNotFoundError, version

import sciloop


def test_version_matches_installed_package_metadata() -> None:
    try:
        installed_version = version("sciloop")
    except PackageNotFoundError:
        assert sciloop.__version__ == "0.0.0"
    else:
        assert sciloop.__version__ == installed_version
