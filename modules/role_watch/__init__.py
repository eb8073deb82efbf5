# Keep this TINY so importing the package never drags in heavy deps.
from . import lib  # so: from modules.role_watch import lib
from .main import run  # so: from modules.role_watch import run

__all__ = ["lib", "run"]
