"""Continuous representation of a sampled reference spectrum."""

from __future__ import annotations

import torch

from ..spectra.spectrum import DTYPE


class ReferenceFunction:
    """Catmull-Rom interpolation of a reference sampled on integer pixel positions.

    The interpolant passes through every sample and has a continuous first derivative, so it can
    be evaluated (and differentiated) at the non-integer positions produced by shift and squeeze.
    Values are returned divided by :attr:`scale`, the largest absolute sample, which keeps the
    columns of the fit design matrix of comparable magnitude.  Positions outside the sampled
    range are clamped to the first or last sample.
    """

    def __init__(self, samples: torch.Tensor) -> None:
        samples = torch.as_tensor(samples, dtype=DTYPE).detach().flatten()
        if samples.numel() < 2:
            raise ValueError("a reference needs at least two samples")
        scale = float(samples.abs().max())
        self.scale = scale if scale > 0.0 else 1.0
        self.samples = samples / self.scale

    def __len__(self) -> int:
        return int(self.samples.numel())

    def __call__(self, positions: torch.Tensor) -> torch.Tensor:
        n = len(self)
        positions = torch.clamp(positions, 0.0, float(n - 1))
        index = torch.clamp(positions.detach().floor().long(), 0, n - 2)
        t = positions - index.to(DTYPE)
        y = self.samples
        p0 = y[torch.clamp(index - 1, min=0)]
        p1 = y[index]
        p2 = y[index + 1]
        p3 = y[torch.clamp(index + 2, max=n - 1)]
        return 0.5 * (
            2.0 * p1
            + (p2 - p0) * t
            + (2.0 * p0 - 5.0 * p1 + 4.0 * p2 - p3) * t * t
            + (3.0 * p1 - p0 - 3.0 * p2 + p3) * t * t * t
        )

    def sample(self, pixels: torch.Tensor, centre: float, shift, squeeze) -> torch.Tensor:
        """Evaluate at ``pixels`` after applying ``shift`` and ``squeeze`` around ``centre``.

        The reference value at pixel ``p`` is read at position ``centre + (p - centre) * squeeze
        - shift``, so a positive shift moves the structures of the reference towards higher pixels.
        """

        return self((pixels - centre) * squeeze + centre - shift)


__all__ = ["ReferenceFunction"]
