"""
Restarted, weighted GMRES for matrix-free operators.

The operator is given as ``matvec(x, z) -> int`` writing ``z = A x`` and
returning an error code (see ``core.types``). Convergence is measured in the
weighted norm ``||W (b - A x)||_2 <= tol`` with ``W = diag(weight)``, which is
equivalent to running plain GMRES on ``(W A W^-1) (W x) = W b``.

Backends:
- ``scipy``: ``scipy.sparse.linalg.gmres`` on the weighted ``LinearOperator``.
- ``native``: Arnoldi with Givens rotations in numpy. It exists only because
  SciPy's ``gmres`` has no switch for the Gram-Schmidt variant, and
  ``solver.gs_type`` selects classical, modified or reorthogonalized
  classical Gram-Schmidt.

Return codes of ``solve``:
- 0: converged
- 1: not converged within the restart budget (recoverable)
- != 0 from ``matvec``: the operator failed, its code is passed through
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional

import numpy as np
import scipy.linalg as sla
import scipy.sparse.linalg as spla

from solvers.linear_types import KrylovBackend, Orthogonalization

logger = logging.getLogger(__name__)

MatVec = Callable[[np.ndarray, np.ndarray], int]


class _OperatorFailure(Exception):
    def __init__(self, code: int) -> None:
        super().__init__(f"matrix-vector product failed with code {code}")
        self.code = code


@dataclass
class GmresStats:
    n_iter: int = 0
    n_restarts: int = 0
    residual_norm: float = float("nan")
    converged: bool = False


class Gmres:
    def __init__(
        self,
        size: int = 0,
        max_krylov: int = 0,
        orthogonalization: Orthogonalization = Orthogonalization.MODIFIED,
        max_restarts: int = 10,
        backend: KrylovBackend = KrylovBackend.NATIVE,
    ) -> None:
        self.size = 0
        self.max_krylov = 0
        self.orthogonalization = orthogonalization
        self.max_restarts = int(max_restarts)
        self.backend = backend
        self.matvec: Optional[MatVec] = None
        self.stats = GmresStats()
        self.initialize(size, max_krylov)

    def initialize(self, size: int, max_krylov: int) -> None:
        """Set problem size; ``max_krylov == 0`` uses the full dimension."""
        self.size = int(size)
        mk = int(max_krylov)
        self.max_krylov = self.size if mk <= 0 else min(mk, self.size)

    def matrix_vector_multiplier(self, matvec: MatVec) -> None:
        self.matvec = matvec

    # ------------------------------------------------------------------ public
    def solve(self, tol: float, weight: np.ndarray, rhs: np.ndarray, sol: np.ndarray) -> int:
        """Solve ``A sol = rhs``; ``sol`` holds the initial guess and is overwritten."""
        if self.matvec is None:
            raise RuntimeError("Gmres.solve called without a matrix-vector multiplier")
        n = self.size
        if rhs.shape != (n,) or sol.shape != (n,) or weight.shape != (n,):
            raise ValueError(
                f"Gmres.solve: expected vectors of shape ({n},), got rhs {rhs.shape}, "
                f"sol {sol.shape}, weight {weight.shape}"
            )
        self.stats = GmresStats()
        if n == 0:
            self.stats.converged = True
            self.stats.residual_norm = 0.0
            return 0

        if self.backend == KrylovBackend.SCIPY:
            code = self._solve_scipy(tol, weight, rhs, sol)
        else:
            code = self._solve_native(tol, weight, rhs, sol)

        logger.debug(
            "GMRES (%s, %s): iter=%d restarts=%d res=%.3e tol=%.3e code=%d",
            self.backend.value, self.orthogonalization.value,
            self.stats.n_iter, self.stats.n_restarts, self.stats.residual_norm, tol, code,
        )
        if code == 1:
            logger.warning(
                "GMRES did not converge within %d restarts (res=%.3e, tol=%.3e)",
                self.max_restarts, self.stats.residual_norm, tol,
            )
        return code

    # ------------------------------------------------------------------ native
    def _orthogonalize(self, V: np.ndarray, k: int, v: np.ndarray, h: np.ndarray) -> np.ndarray:
        basis = V[: k + 1]
        if self.orthogonalization == Orthogonalization.MODIFIED:
            for j in range(k + 1):
                h[j] = basis[j] @ v
                v = v - h[j] * basis[j]
            return v
        coeffs = basis @ v
        v = v - basis.T @ coeffs
        if self.orthogonalization == Orthogonalization.CLASSICAL_REORTH:
            corr = basis @ v
            v = v - basis.T @ corr
            coeffs = coeffs + corr
        h[: k + 1] = coeffs
        return v

    def _solve_native(self, tol: float, weight: np.ndarray, rhs: np.ndarray, sol: np.ndarray) -> int:
        n = self.size
        m = self.max_krylov
        tmp = np.empty(n, dtype=np.float64)
        z = np.empty(n, dtype=np.float64)

        for restart in range(self.max_restarts + 1):
            self.stats.n_restarts = restart
            code = self.matvec(sol, z)
            if code != 0:
                return code
            r = weight * (rhs - z)
            beta = float(np.linalg.norm(r))
            self.stats.residual_norm = beta
            if beta <= tol:
                self.stats.converged = True
                return 0

            V = np.zeros((m + 1, n), dtype=np.float64)
            H = np.zeros((m + 1, m), dtype=np.float64)
            cs = np.zeros(m, dtype=np.float64)
            sn = np.zeros(m, dtype=np.float64)
            g = np.zeros(m + 1, dtype=np.float64)
            V[0] = r / beta
            g[0] = beta

            k_used = 0
            for k in range(m):
                tmp[:] = V[k] / weight
                code = self.matvec(tmp, z)
                if code != 0:
                    return code
                v = self._orthogonalize(V, k, weight * z, H[:, k])
                H[k + 1, k] = float(np.linalg.norm(v))
                if H[k + 1, k] > 0.0:
                    V[k + 1] = v / H[k + 1, k]

                for j in range(k):
                    hj, hj1 = H[j, k], H[j + 1, k]
                    H[j, k] = cs[j] * hj + sn[j] * hj1
                    H[j + 1, k] = -sn[j] * hj + cs[j] * hj1
                denom = float(np.hypot(H[k, k], H[k + 1, k]))
                if denom == 0.0:
                    # singular Hessenberg column, keep the first k directions
                    break
                cs[k], sn[k] = H[k, k] / denom, H[k + 1, k] / denom
                H[k, k] = denom
                H[k + 1, k] = 0.0
                g[k + 1] = -sn[k] * g[k]
                g[k] = cs[k] * g[k]

                k_used = k + 1
                self.stats.n_iter += 1
                self.stats.residual_norm = abs(float(g[k + 1]))
                if self.stats.residual_norm <= tol:
                    break

            if k_used > 0:
                y = sla.solve_triangular(H[:k_used, :k_used], g[:k_used], lower=False, check_finite=False)
                sol += (V[:k_used].T @ y) / weight
            if self.stats.residual_norm <= tol:
                self.stats.converged = True
                return 0

        return 1

    # ------------------------------------------------------------------ scipy
    def _solve_scipy(self, tol: float, weight: np.ndarray, rhs: np.ndarray, sol: np.ndarray) -> int:
        n = self.size
        z = np.empty(n, dtype=np.float64)
        counter = {"n": 0}

        def scaled_matvec(v):
            counter["n"] += 1
            code = self.matvec(np.asarray(v, dtype=np.float64).ravel() / weight, z)
            if code != 0:
                raise _OperatorFailure(code)
            return weight * z

        op = spla.LinearOperator((n, n), matvec=scaled_matvec, dtype=np.float64)
        try:
            x_scaled, info = spla.gmres(
                op,
                weight * rhs,
                x0=weight * sol,
                rtol=0.0,
                atol=tol,
                restart=self.max_krylov,
                maxiter=self.max_restarts + 1,
            )
            self.stats.n_iter = counter["n"]
            self.stats.residual_norm = float(np.linalg.norm(weight * rhs - scaled_matvec(x_scaled)))
        except _OperatorFailure as exc:
            return exc.code

        sol[:] = x_scaled / weight
        if info < 0:
            raise ValueError(f"scipy gmres reported illegal input (info={info})")
        self.stats.converged = info == 0
        return 0 if info == 0 else 1
