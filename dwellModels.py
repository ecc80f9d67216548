import logging

import numpy as np
import pandas as pd
from scipy import stats

from simConfig import DWELL_SECONDS

logger = logging.getLogger(__name__)

DWELL_KINDS = ("constant", "uniform", "lognorm")


class DwellModel:
    """Distribution of how long a vehicle stays at a stop, in render seconds.

    constant: always `seconds`. uniform: flat between low and high.
    lognorm: fitted on observed dwell samples, falls back to uniform when the
    samples are too few or all identical.
    """

    def __init__(self, kind="constant", seconds=DWELL_SECONDS, low=None, high=None, samples=None):
        if kind not in DWELL_KINDS:
            raise ValueError(f"Invalid dwell kind '{kind}'. Allowed: {list(DWELL_KINDS)}")
        self.kind = kind
        self.seconds = float(seconds)
        self.low = float(low) if low is not None else self.seconds * 0.5
        self.high = float(high) if high is not None else self.seconds * 1.5
        self.x = None
        self.pdf = None
        self.mean = self.seconds
        self.shape = self.loc = self.scale = None

        if kind == "uniform":
            self._set_uniform()
        elif kind == "lognorm":
            self._fit_lognorm(samples)

    def _set_uniform(self):
        self.kind = "uniform"
        self.x = np.linspace(self.low, self.high, 200)
        pdf = np.ones_like(self.x, dtype=float)
        self.pdf = pdf / pdf.sum()
        self.mean = float(np.sum(self.x * self.pdf))

    def _fit_lognorm(self, samples):
        data = pd.to_numeric(pd.Series(list(samples) if samples is not None else [], dtype=object),
                             errors="coerce").dropna()
        data = data[data > 0]
        if len(data) < 3 or data.min() >= data.max():
            # fallback to a light uniform if insufficient/degenerate data
            logger.warning("[dwell] not enough samples for lognorm fit, using uniform")
            self._set_uniform()
            return
        shape, loc, scale = stats.lognorm.fit(data, floc=0)
        self.shape, self.loc, self.scale = shape, loc, scale
        self.x = np.linspace(max(1e-6, data.min()), data.max(), 200)
        pdf = stats.lognorm.pdf(self.x, shape, loc, scale)
        self.pdf = pdf / pdf.sum()
        self.mean = float(stats.lognorm.mean(shape, loc, scale))

    def sample(self, rng=None):
        if self.kind == "constant":
            return self.seconds
        rng = rng if rng is not None else np.random.default_rng()
        return float(rng.choice(self.x, p=self.pdf))

    @classmethod
    def from_config(cls, config):
        return cls(kind=config.dwell_kind, seconds=config.dwell_seconds, samples=config.dwell_samples)
