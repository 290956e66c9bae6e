"""Platform builders."""
from .android import AndroidBuilder
from .common import MobileBuilder, StagePipeline, compile_parallel, output_dir_lock
from .ios import IosBuilder, plan_framework_slices

__all__ = [
    "AndroidBuilder",
    "IosBuilder",
    "MobileBuilder",
    "StagePipeline",
    "compile_parallel",
    "output_dir_lock",
    "plan_framework_slices",
]
