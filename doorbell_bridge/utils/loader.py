"""
Loads pluggable components named as `package.module:factory`.
"""

import importlib
import logging
from typing import Any, Type

logger = logging.getLogger(__name__)


def load_from_factory(path: str, expected: Type) -> Any:
    """
    Import `package.module:factory`, call the factory and check what it built.

    Raises:
        ValueError: if `path` is not in module:factory form.
        TypeError: if the factory does not return an `expected` instance.
    """
    module_name, _, attribute = path.partition(":")
    if not module_name or not attribute:
        raise ValueError(f"Expected 'package.module:factory', got {path!r}")

    module = importlib.import_module(module_name)
    factory = getattr(module, attribute)
    instance = factory()
    if not isinstance(instance, expected):
        raise TypeError(f"{path} returned {type(instance).__name__}, not a {expected.__name__}")

    logger.info(f"Loaded {expected.__name__} {type(instance).__name__} from {path}")
    return instance
