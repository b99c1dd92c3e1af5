"""Shape and covariance checks, and small linear algebra helpers shared by the filter."""

from __future__ import annotations

import torch
import torch.linalg

from .errors import DimensionMismatchError, NonPositiveSemiDefiniteError


def check_vector(name: str, vector: torch.Tensor, dim: int) -> None:
    """Check that ``vector`` is a column vector of size ``dim``.

    Args:
        name (str): Name used in the error message.
        vector (torch.Tensor): Vector to check.
            Shape: ``(..., dim, 1)``
        dim (int): Expected dimension.

    Raises:
        DimensionMismatchError: If the shape is not ``(..., dim, 1)``.
    """
    if vector.ndim < 2 or vector.shape[-2:] != (dim, 1):  # noqa: PLR2004
        raise DimensionMismatchError(
            f"{name} should be a column vector of shape (..., {dim}, 1). Found {tuple(vector.shape)}"
        )


def check_matrix(name: str, matrix: torch.Tensor, rows: int, cols: int) -> None:
    """Check that ``matrix`` has shape ``(..., rows, cols)``.

    Raises:
        DimensionMismatchError: If the shape is not ``(..., rows, cols)``.
    """
    if matrix.ndim < 2 or matrix.shape[-2:] != (rows, cols):  # noqa: PLR2004
        raise DimensionMismatchError(f"{name} should have shape (..., {rows}, {cols}). Found {tuple(matrix.shape)}")


def check_covariance(name: str, covariance: torch.Tensor, dim: int, tolerance=1e-6) -> None:
    """Check that ``covariance`` is a symmetric positive semi-definite matrix of size ``dim``.

    The check is relative to the magnitude of the matrix: asymmetries and negative eigenvalues
    smaller than ``tolerance * max|covariance|`` are accepted as round-off.

    Args:
        name (str): Name used in the error message.
        covariance (torch.Tensor): Covariance to check.
            Shape: ``(..., dim, dim)``
        dim (int): Expected dimension.
        tolerance (float): Relative tolerance.
            Default: 1e-6

    Raises:
        DimensionMismatchError: If the shape is not ``(..., dim, dim)``.
        NonPositiveSemiDefiniteError: If the matrix is not symmetric or has a negative eigenvalue.
    """
    check_matrix(name, covariance, dim, dim)

    if not torch.isfinite(covariance).all():
        raise NonPositiveSemiDefiniteError(f"{name} contains non-finite values")

    # An all-zero covariance is a valid (degenerate) one: fall back to an absolute tolerance
    scale = (covariance.abs().max().item() if covariance.numel() else 0.0) or 1.0
    if (covariance - covariance.mT).abs().max().item() > tolerance * scale:
        raise NonPositiveSemiDefiniteError(f"{name} is not symmetric")

    min_eigenvalue = torch.linalg.eigvalsh(symmetrize(covariance)).min().item()
    if min_eigenvalue < -tolerance * scale:
        raise NonPositiveSemiDefiniteError(f"{name} is not positive semi-definite (eigenvalue {min_eigenvalue:.3g})")


def symmetrize(matrix: torch.Tensor) -> torch.Tensor:
    """Return ``(A + Aᵀ) / 2``. It is exactly ``A`` when ``A`` is already symmetric."""
    return (matrix + matrix.mT) / 2


def clip_negative_eigenvalues(covariance: torch.Tensor) -> torch.Tensor:
    """Project a symmetric matrix onto the PSD cone by clipping negative eigenvalues to 0.

    The matrix is returned untouched when it is already PSD, so that well-behaved runs are not
    perturbed by the eigen decomposition round-off.

    Args:
        covariance (torch.Tensor): Symmetric matrix.
            Shape: ``(..., dim, dim)``

    Returns:
        torch.Tensor: PSD matrix
            Shape: ``(..., dim, dim)``
    """
    eigenvalues, eigenvectors = torch.linalg.eigh(covariance)
    if (eigenvalues >= 0).all():
        return covariance

    eigenvalues = eigenvalues.clamp(min=0)
    return symmetrize(eigenvectors @ torch.diag_embed(eigenvalues) @ eigenvectors.mT)


def observed_indices(measure: torch.Tensor) -> torch.Tensor:
    """Indices of the observed (non-NaN) entries of a single measure.

    Args:
        measure (torch.Tensor): Measure with NaN for missing entries.
            Shape: ``(dim_z, 1)``

    Returns:
        torch.Tensor: Sorted indices of the observed entries (int64).
            Shape: ``(n_observed,)``
    """
    return torch.nonzero(~torch.isnan(measure[..., 0]), as_tuple=True)[0]
