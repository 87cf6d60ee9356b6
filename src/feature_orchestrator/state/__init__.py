from .accessor import StateAccessor
from .loader import load_feature_file, parse_feature_definition

__all__ = ["StateAccessor", "load_feature_file", "parse_feature_definition"]
