"""
SYMREG Per-Level Image Preparation

Coarse-to-fine working sets for linear registration. Two strategies
share one prepare(settings) capability:

- SymmetricLevelPreparation: inputs stay on their native grids and are
  only smoothed; the midway template is resized to the level's scale.
- AsymmetricLevelPreparation: each input is resized then smoothed, and
  the resized image 1 is the template.

Working sets are level-scoped: nothing is carried from one level to the next.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..config.config_loader import LevelSettings
from ..data.image import Image
from ..utils.logging_config import LogContext
from .filters import resize, resize_header, smooth


class PreparationMode(str, Enum):
    """Strategy used to build per-level working images"""
    SYMMETRIC = "symmetric"
    ASYMMETRIC = "asymmetric"


@dataclass
class LevelWorkingSet:
    """Images used by the metric at one resolution level"""
    settings: LevelSettings
    image1: Image
    image2: Image
    template: Image

    @property
    def level(self) -> int:
        return self.settings.index


class LevelPreparation:
    """Base class holding the full-resolution inputs"""

    mode: PreparationMode

    def __init__(self, image1: Image, image2: Image, log_context: Optional[LogContext] = None):
        self.image1 = image1
        self.image2 = image2
        self.log_context = log_context or LogContext()
        self.log = self.log_context.get_child("filters")

    def prepare(self, settings: LevelSettings) -> LevelWorkingSet:
        raise NotImplementedError


class SymmetricLevelPreparation(LevelPreparation):
    """Smooth both inputs in place of resampling, resize the midway grid"""

    mode = PreparationMode.SYMMETRIC

    def __init__(
        self,
        image1: Image,
        image2: Image,
        midway_template: Image,
        log_context: Optional[LogContext] = None,
    ):
        super().__init__(image1, image2, log_context)
        self.midway_template = midway_template

    def prepare(self, settings: LevelSettings) -> LevelWorkingSet:
        header = resize_header(self.midway_template.header, settings.scale_factor)
        self.log.info(f"Midway template at level {settings.index}: {header.shape}")
        template = Image.scratch(header, device=self.midway_template.device)

        image1 = smooth(self.image1, settings.smooth_stdev, log=self.log)
        image2 = smooth(self.image2, settings.smooth_stdev, log=self.log)
        return LevelWorkingSet(settings, image1, image2, template)


class AsymmetricLevelPreparation(LevelPreparation):
    """Resize each input to the level's scale, then smooth"""

    mode = PreparationMode.ASYMMETRIC

    def prepare(self, settings: LevelSettings) -> LevelWorkingSet:
        image1 = resize(self.image1, settings.scale_factor, log=self.log)
        image2 = resize(self.image2, settings.scale_factor, log=self.log)
        image1 = smooth(image1, settings.smooth_stdev, log=self.log)
        image2 = smooth(image2, settings.smooth_stdev, log=self.log)
        return LevelWorkingSet(settings, image1, image2, template=image1)
