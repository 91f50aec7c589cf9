from importlib.metadata import PackageNotFoundError, version

__all__ = ("__version__",)

try:
    __version__ = version("leaseq")
except PackageNotFoundError:
    import tomllib
    from pathlib import Path

    with (Path(__file__).parents[2] / "pyproject.toml").open("rb") as f:
        pyproject = tomllib.load(f)
        __version__ = pyproject["project"]["version"]
