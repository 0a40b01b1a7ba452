"""
Driver for unit-operation network cases described in YAML.

Responsibilities:
- Load the case YAML and build the reference unit operations.
- Configure the ModelSystem (switches, solver settings).
- Apply initial conditions and run consistent initialization.
- Optionally advance with implicit Euler steps (Newton + Schur linear solve)
  and record unit solutions.
- Log residual norms; return a non-zero exit code on failure.

Case layout::

    case: {id: two_tank}
    units:
      - {id: 0, type: inlet, n_comp: 1, const_coeff: [1.0]}
      - {id: 1, type: cstr, n_comp: 1, volume: 2.0}
      - {id: 2, type: outlet, n_comp: 1}
    connections: {...}          # see ModelSystem.configure
    solver: {...}
    initial: {unit_001: {init_c: [0.0]}}
    time: {section_times: [0.0, 10.0], steps_per_section: 20}
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple

import numpy as np
import yaml

from core.logging_utils import get_log_level_from_env, setup_logging
from core.model_system import ModelSystem
from core.types import NetworkConfigError
from recording.recorder import SolutionRecorder
from units.base import UnitOperation
from units.linear import CstrUnit, InletUnit, OutletUnit

logger = logging.getLogger(__name__)

NEWTON_MAX_ITER = 10
NEWTON_TOL = 1e-8
# outer tolerance handed to the linear solver (scaled by schur_safety there)
LINEAR_TOL = 1e-3


def _read_yaml_text(cfg_file: Path) -> str:
    try:
        return cfg_file.read_text(encoding="utf-8-sig")
    except UnicodeDecodeError:
        return cfg_file.read_text()


def load_case(cfg_path: str | Path) -> Dict[str, Any]:
    cfg_file = Path(cfg_path).expanduser().resolve()
    raw = yaml.safe_load(_read_yaml_text(cfg_file)) or {}
    if not isinstance(raw, dict):
        raise NetworkConfigError(f"{cfg_file}: top level of the case must be a mapping")
    return raw


def build_unit(entry: Mapping[str, Any]) -> UnitOperation:
    """Instantiate one reference unit operation from its YAML entry."""
    try:
        unit_id = int(entry["id"])
        unit_type = str(entry["type"]).strip().lower()
        n_comp = int(entry.get("n_comp", 1))
    except KeyError as exc:
        raise NetworkConfigError(f"unit entry {dict(entry)!r} is missing {exc}") from exc
    name = str(entry.get("name", ""))

    if unit_type == "inlet":
        return InletUnit(unit_id, n_comp, entry.get("const_coeff"), entry.get("lin_coeff"), name=name)
    if unit_type == "outlet":
        return OutletUnit(unit_id, n_comp, name=name)
    if unit_type == "cstr":
        return CstrUnit(unit_id, n_comp, float(entry.get("volume", 1.0)), entry.get("init_c"), name=name)
    raise NetworkConfigError(f"unit {unit_id}: unknown unit type {unit_type!r} (inlet | outlet | cstr)")


def build_system(case: Mapping[str, Any]) -> ModelSystem:
    units = case.get("units") or []
    if not units:
        raise NetworkConfigError("case defines no units")
    system = ModelSystem()
    for entry in units:
        system.add_model(build_unit(entry))
    if not system.configure(case):
        raise NetworkConfigError("network configuration reported failures (see log)")
    return system


def _section_times(case: Mapping[str, Any]) -> np.ndarray:
    time_cfg = case.get("time") or {}
    times = np.asarray(time_cfg.get("section_times", [0.0, 1.0]), dtype=np.float64)
    if times.ndim != 1 or times.size < 2 or np.any(np.diff(times) <= 0.0):
        raise NetworkConfigError(f"time.section_times must be strictly increasing, got {times.tolist()}")
    return times


def _implicit_euler_step(system: ModelSystem, t: float, sec_idx: int, dt: float,
                         y: np.ndarray, y_dot: np.ndarray) -> Tuple[int, int]:
    """Advance ``y`` from t to t + dt in place; returns (error code, Newton iterations)."""
    y_old = y.copy()
    alpha = 1.0 / dt
    res = np.zeros_like(y)
    weight = np.ones_like(y)
    t_new = t + dt
    for it in range(1, NEWTON_MAX_ITER + 1):
        y_dot[:] = (y - y_old) * alpha
        code = system.residual_with_jacobian(t_new, sec_idx, 1.0, y, y_dot, res)
        if code < 0:
            return code, it
        if np.linalg.norm(res, ord=np.inf) <= NEWTON_TOL:
            return 0, it
        rhs = res.copy()
        code = system.linear_solve(t_new, 1.0, alpha, LINEAR_TOL, rhs, weight, y, y_dot, res)
        if code != 0:
            return code, it
        y -= rhs
    return 1, NEWTON_MAX_ITER


def run_case(cfg_path: str | Path, *, steps_per_section: Optional[int] = None,
             dry_run: bool = False) -> int:
    case = load_case(cfg_path)
    case_id = (case.get("case") or {}).get("id", Path(cfg_path).stem)

    try:
        system = build_system(case)
        times = _section_times(case)
    except NetworkConfigError as exc:
        logger.error("Case %s: invalid configuration: %s", case_id, exc)
        return 2

    n_sections = times.size - 1
    system.set_section_times(times, [False] * n_sections, n_sections)

    n = system.num_dofs()
    y = np.zeros(n, dtype=np.float64)
    y_dot = np.zeros(n, dtype=np.float64)
    system.apply_initial_condition_from(case.get("initial") or {}, y, y_dot)

    recorder = SolutionRecorder(store_coupling=True)
    system.report_solution_structure(recorder)

    n_steps = steps_per_section
    if n_steps is None:
        n_steps = int((case.get("time") or {}).get("steps_per_section", 10))

    try:
        for sec in range(n_sections):
            t0 = float(times[sec])
            system.notify_discontinuous_section_transition(t0, sec)
            system.consistent_initial_conditions(t0, sec, 1.0, y, y_dot)
            norm = system.residual_norm(t0, sec, 1.0, y, y_dot)
            logger.info("Case %s: section %d (switch %d) t=%g consistent residual %.3e",
                        case_id, sec, system.cur_switch, t0, norm)

            if sec == 0:
                recorder.begin_timestep(t0)
                system.report_solution(recorder, y)
                recorder.end_timestep()
            if dry_run:
                break

            dt = (float(times[sec + 1]) - t0) / n_steps
            t = t0
            for step in range(n_steps):
                code, n_newton = _implicit_euler_step(system, t, sec, dt, y, y_dot)
                if code != 0:
                    logger.error("Case %s: step %d of section %d failed with code %d", case_id, step, sec, code)
                    return 1
                t += dt
                recorder.begin_timestep(t)
                system.report_solution(recorder, y)
                recorder.end_timestep()
                logger.debug("t=%g newton=%d gmres_iter=%s", t, n_newton,
                             None if system.last_schur_result is None else system.last_schur_result.n_iter)
    finally:
        system.close()

    for unit in system.units:
        sol = recorder.solution(unit.unit_operation_id)
        logger.info("Unit %d (%s): final state %s", unit.unit_operation_id, unit.name, np.array2string(sol[-1]))
    return 0


def _parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a unit-operation network case.")
    parser.add_argument("case_yaml", help="Path to case YAML file.")
    parser.add_argument(
        "--steps",
        type=int,
        default=None,
        help="Override implicit Euler steps per section (default: use YAML).",
    )
    parser.add_argument(
        "--dry_run",
        action="store_true",
        help="Configure and initialize only; skip time stepping.",
    )
    parser.add_argument(
        "--log_file",
        default=None,
        help="Mirror log records into this file.",
    )
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _parse_args(argv)
    setup_logging(level=get_log_level_from_env("INFO"), log_file=args.log_file)
    return run_case(args.case_yaml, steps_per_section=args.steps, dry_run=args.dry_run)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
