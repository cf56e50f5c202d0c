from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("blackboard")
except PackageNotFoundError:
    __version__ = "0.0.0"
