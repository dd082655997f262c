"""
Learning rate schedules, evaluated per training iteration.
The network's default is the inverse decay policy: base * (1 + gamma * it) ^ (-power).
"""
import math


class LRScheduler:
    """Base class for learning rate schedulers."""

    def __init__(self, base_lr, verbose=False):
        self.base_lr = base_lr
        self.verbose = verbose
        self.current_lr = base_lr

    def step(self, iteration):
        """Compute and remember the rate for `iteration`."""
        new_lr = self.get_lr(iteration)
        if self.verbose and new_lr != self.current_lr:
            print(f"   LR updated: {new_lr:.6f}")
        self.current_lr = new_lr
        return new_lr

    def get_lr(self, iteration):
        """Override this method in subclasses."""
        return self.base_lr


class FixedLR(LRScheduler):
    """Constant rate."""


class InverseLR(LRScheduler):
    """Inverse decay: LR = base_lr * (1 + gamma * iteration) ^ (-power)."""

    def __init__(self, base_lr, gamma=1e-4, power=0.75, verbose=False):
        super().__init__(base_lr, verbose)
        self.gamma = gamma
        self.power = power

    def get_lr(self, iteration):
        return self.base_lr * math.pow(1.0 + self.gamma * iteration, -self.power)


class StepLR(LRScheduler):
    """Step decay: reduce LR by gamma every step_size iterations."""

    def __init__(self, base_lr, step_size, gamma=0.1, verbose=False):
        super().__init__(base_lr, verbose)
        self.step_size = step_size
        self.gamma = gamma

    def get_lr(self, iteration):
        return self.base_lr * (self.gamma ** (iteration // self.step_size))


class ExponentialLR(LRScheduler):
    """Exponential decay: LR = base_lr * gamma^iteration."""

    def __init__(self, base_lr, gamma=0.9999, verbose=False):
        super().__init__(base_lr, verbose)
        self.gamma = gamma

    def get_lr(self, iteration):
        return self.base_lr * (self.gamma ** iteration)


def get_scheduler(name, base_lr, **kwargs):
    """Factory function to create schedulers by name."""
    schedulers = {
        "fixed": FixedLR,
        "inv": InverseLR,
        "step": StepLR,
        "exp": ExponentialLR,
    }

    if name not in schedulers:
        raise ValueError(f"Unknown scheduler: {name}. Available: {list(schedulers.keys())}")

    return schedulers[name](base_lr, **kwargs)
