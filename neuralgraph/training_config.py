"""
training_config.py
~~~~~~~~~~~~~~~~~~

Run-level training settings and termination conditions.
"""

import math
from typing import Any, Dict, Optional

# Historical engine behaviour clipped intermediate gradients to +/-10
DEFAULT_PER_ELEMENT_GRAD_CLIP = 10.0


class LearningRateSchedule:
    """
    Learning-rate multiplier as a function of the epoch index.

    - NONE: always 1
    - STEP: ``gamma ** (epoch // step_size)``
    - EXP: ``gamma ** epoch``
    - COSINE: ``min + 0.5 * (1 - min) * (1 + cos(pi * t / t_max))`` with
      ``t = min(epoch, t_max)``
    """

    NONE = 0
    STEP = 1
    EXP = 2
    COSINE = 3

    def __init__(
        self,
        schedule_type: int = NONE,
        step_size: int = 0,
        gamma: float = 1.0,
        t_max: int = 0,
        min_multiplier: float = 0.0,
    ):
        self.type = int(schedule_type)
        self.step_size = int(step_size)
        self.gamma = float(gamma)
        self.t_max = int(t_max)
        self.min_multiplier = float(min_multiplier)

    @classmethod
    def step(cls, step_size: int, gamma: float) -> 'LearningRateSchedule':
        return cls(cls.STEP, step_size=step_size, gamma=gamma)

    @classmethod
    def exponential(cls, gamma: float) -> 'LearningRateSchedule':
        return cls(cls.EXP, gamma=gamma)

    @classmethod
    def cosine(cls, t_max: int, min_multiplier: float = 0.0) -> 'LearningRateSchedule':
        return cls(cls.COSINE, t_max=t_max, min_multiplier=min_multiplier)

    def multiplier(self, epoch: int) -> float:
        epoch = max(0, int(epoch))
        if self.type == self.STEP:
            if self.step_size <= 0:
                return 1.0
            return self.gamma ** (epoch // self.step_size)
        if self.type == self.EXP:
            return self.gamma ** epoch
        if self.type == self.COSINE:
            if self.t_max <= 0:
                return 1.0
            t = min(epoch, self.t_max)
            cosv = math.cos(math.pi * t / self.t_max)
            return self.min_multiplier + 0.5 * (1.0 - self.min_multiplier) * (1.0 + cosv)
        return 1.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'schedule_type': self.type,
            'step_size': self.step_size,
            'gamma': self.gamma,
            't_max': self.t_max,
            'min_multiplier': self.min_multiplier,
        }


class TrainingConfig:
    """
    Overrides applied on top of the topology descriptor for one run.

    Args:
        minibatch_size_override: If > 0, replaces the descriptor's batch size
        per_element_grad_clip: Clip for every error signal; <= 0 disables
        lr_schedule: Learning-rate multiplier schedule
    """

    def __init__(
        self,
        minibatch_size_override: int = 0,
        per_element_grad_clip: float = DEFAULT_PER_ELEMENT_GRAD_CLIP,
        lr_schedule: Optional[LearningRateSchedule] = None,
    ):
        self.minibatch_size_override = int(minibatch_size_override)
        self.per_element_grad_clip = float(per_element_grad_clip)
        self.lr_schedule = lr_schedule or LearningRateSchedule()


class Terminator:
    """
    Stop conditions for a training run. A zero value disables a condition.

    Args:
        epoch: Stop once this many epochs have run
        timestamp: Stop once this many milliseconds have elapsed
        accuracy: Stop once accuracy reaches this value (0..1)
    """

    def __init__(self, epoch: int = 0, timestamp: int = 0, accuracy: float = 0.0):
        self.epoch = int(epoch)
        self.timestamp = int(timestamp)
        self.accuracy = float(accuracy)

    def is_set(self) -> bool:
        return self.epoch > 0 or self.timestamp > 0 or self.accuracy > 0.0

    def triggered(self, elapsed_ms: int, epoch: int, accuracy: float) -> bool:
        if self.timestamp > 0 and elapsed_ms >= self.timestamp:
            return True
        if self.epoch > 0 and epoch >= self.epoch:
            return True
        if self.accuracy > 0.0 and accuracy >= self.accuracy:
            return True
        return False

    def __repr__(self) -> str:
        return f"Terminator(epoch={self.epoch}, timestamp={self.timestamp}, accuracy={self.accuracy})"
