"""Estimability guard.

Turns the raw per-PIV configuration and control flags into a validated
``PIVSchema`` and refuses parameterizations that cannot be identified,
before any sampling starts.

Accepted raw configuration keys (snake_case or the historical names):

    pivs_config / PIVs_config            {name: {"stable": bool, ...}}
    nvalues / Nvalues                    cardinality per PIV
    control_on_mistakes / controlOnMistakes
    same_mistakes / sameMistakes
    phi_mistakes_a_fixed / phiMistakesAFixed
    phi_mistakes_b_fixed / phiMistakesBFixed
    phi_for_mistakes_a / phiForMistakesA
    phi_for_mistakes_b / phiForMistakesB

Unstable PIVs may declare hazard covariates with ``hazard_covariates_a`` /
``hazard_covariates_b`` (or ``pSameH.cov.A`` / ``pSameH.cov.B``); setting
``conditional_hazard`` (``conditionalHazard``) to false discards them.
"""
from __future__ import annotations

import math
from collections.abc import Mapping, Sequence
from typing import Any

from pydantic import ValidationError

from flexlink.config import CONFIG, RunConfig
from flexlink.exceptions import ConfigurationError, EstimabilityError
from flexlink.logging import get_logger
from flexlink.schema import MistakeControl, PIVSchema, StablePIV, UnstablePIV

logger = get_logger(__name__)

_LEGACY_KEYS = {
    "PIVs_config": "pivs_config",
    "Nvalues": "nvalues",
    "controlOnMistakes": "control_on_mistakes",
    "sameMistakes": "same_mistakes",
    "phiMistakesAFixed": "phi_mistakes_a_fixed",
    "phiMistakesBFixed": "phi_mistakes_b_fixed",
    "phiForMistakesA": "phi_for_mistakes_a",
    "phiForMistakesB": "phi_for_mistakes_b",
}

_PIV_KEYS = {
    "pSameH.cov.A": "hazard_covariates_a",
    "pSameH.cov.B": "hazard_covariates_b",
    "conditionalHazard": "conditional_hazard",
}


def _is_missing(value: Any) -> bool:
    if value is None:
        return True
    try:
        return math.isnan(value)
    except TypeError:
        return False


def _per_piv(name: str, values: Any, names: list[str], default: Any) -> list[Any]:
    """Broadcast a scalar flag or check a per-PIV vector has one entry per PIV."""
    if values is None:
        return [default] * len(names)
    if isinstance(values, Mapping):
        return [values.get(n, default) for n in names]
    if isinstance(values, (str, bytes)) or not hasattr(values, "__len__"):
        return [values] * len(names)
    if len(values) != len(names):
        raise ConfigurationError(
            f"{name} has {len(values)} entries for {len(names)} PIVs"
        )
    return list(values)


def _fixed_value(
    piv: str,
    flag: bool,
    values: list[Any],
    j: int,
) -> float | None:
    if not flag:
        return None
    value = values[j]
    if _is_missing(value):
        return None
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"fixed mistake rate {value!r} is not a number", piv=piv) from e


def build_schema(
    pivs_config: Mapping[str, Mapping[str, Any]],
    nvalues: Sequence[int] | Mapping[str, int],
    control_on_mistakes: Sequence[bool] | bool = False,
    same_mistakes: bool = False,
    phi_mistakes_a_fixed: bool = False,
    phi_mistakes_b_fixed: bool = False,
    phi_for_mistakes_a: Sequence[float | None] | None = None,
    phi_for_mistakes_b: Sequence[float | None] | None = None,
    mistake_ceiling: float = CONFIG.mistake_ceiling,
    auto_fix: bool = False,
) -> PIVSchema:
    """Validate the raw PIV configuration and return a ``PIVSchema``.

    Args:
        pivs_config: Per-PIV settings, keyed by column name, in linkage order
        nvalues: Cardinality per PIV (sequence in PIV order, or mapping)
        control_on_mistakes: Whether each PIV's mistake rate is bounded
        same_mistakes: One mistake rate for both sources instead of one each
        phi_mistakes_a_fixed: Whether mistake rates in A are fixed where given
        phi_mistakes_b_fixed: Whether mistake rates in B are fixed where given
        phi_for_mistakes_a: Fixed values for A (None/NaN entries stay free)
        phi_for_mistakes_b: Fixed values for B (None/NaN entries stay free)
        mistake_ceiling: Ceiling applied to bounded mistake rates
        auto_fix: Fix non-identifiable mistake rates to 0 instead of raising

    Returns:
        Validated schema

    Raises:
        ConfigurationError: Malformed or incomplete configuration
        EstimabilityError: Non-identifiable unstable PIV and auto_fix is off
    """
    if not pivs_config:
        raise ConfigurationError("no PIVs configured")
    names = list(pivs_config)

    cardinalities = _per_piv("nvalues", nvalues, names, None)
    bounded = _per_piv("control_on_mistakes", control_on_mistakes, names, False)
    if phi_mistakes_a_fixed and phi_for_mistakes_a is None:
        raise ConfigurationError("phi_mistakes_a_fixed is set but no values were given")
    if phi_mistakes_b_fixed and phi_for_mistakes_b is None:
        raise ConfigurationError("phi_mistakes_b_fixed is set but no values were given")
    fixed_a = _per_piv("phi_for_mistakes_a", phi_for_mistakes_a, names, None)
    fixed_b = _per_piv("phi_for_mistakes_b", phi_for_mistakes_b, names, None)

    pivs: list[StablePIV | UnstablePIV] = []
    for j, name in enumerate(names):
        raw = {_PIV_KEYS.get(k, k): v for k, v in dict(pivs_config[name] or {}).items()}
        if "stable" not in raw:
            raise ConfigurationError("does not declare whether it is stable", piv=name)
        if cardinalities[j] is None:
            raise ConfigurationError("has no cardinality", piv=name)

        try:
            mistakes = MistakeControl(
                bounded=bool(bounded[j]),
                ceiling=mistake_ceiling,
                shared=bool(same_mistakes),
                fixed_a=_fixed_value(name, phi_mistakes_a_fixed, fixed_a, j),
                fixed_b=_fixed_value(name, phi_mistakes_b_fixed, fixed_b, j),
            )
            if raw["stable"]:
                piv: StablePIV | UnstablePIV = StablePIV(
                    name=name,
                    cardinality=int(cardinalities[j]),
                    mistakes=mistakes,
                )
            else:
                conditional = raw.get("conditional_hazard", True)
                piv = UnstablePIV(
                    name=name,
                    cardinality=int(cardinalities[j]),
                    mistakes=mistakes,
                    hazard_covariates_a=list(raw.get("hazard_covariates_a") or []) if conditional else [],
                    hazard_covariates_b=list(raw.get("hazard_covariates_b") or []) if conditional else [],
                )
        except ValidationError as e:
            reason = "; ".join(err["msg"] for err in e.errors())
            raise ConfigurationError(reason, piv=name) from e
        pivs.append(piv)

    schema = PIVSchema(pivs=pivs)
    return check_estimability(schema, auto_fix=auto_fix)


def schema_from_mapping(config: Mapping[str, Any], auto_fix: bool = False) -> PIVSchema:
    """Build a schema from a single mapping using snake_case or historical keys."""
    kwargs = {_LEGACY_KEYS.get(k, k): v for k, v in config.items()}
    known = {
        "pivs_config",
        "nvalues",
        "control_on_mistakes",
        "same_mistakes",
        "phi_mistakes_a_fixed",
        "phi_mistakes_b_fixed",
        "phi_for_mistakes_a",
        "phi_for_mistakes_b",
        "mistake_ceiling",
    }
    if "pivs_config" not in kwargs:
        raise ConfigurationError("configuration has no PIVs_config / pivs_config entry")
    if "nvalues" not in kwargs:
        raise ConfigurationError("configuration has no Nvalues / nvalues entry")
    return build_schema(
        **{k: v for k, v in kwargs.items() if k in known},
        auto_fix=auto_fix,
    )


def check_estimability(schema: PIVSchema, auto_fix: bool = False) -> PIVSchema:
    """Reject unstable PIVs whose change and mistake rates are confounded.

    An unstable PIV with no hazard covariates in either source and a mistake
    rate that is neither bounded nor fixed explains every disagreement
    between linked records equally well as a change or as a mistake.

    Returns the schema unchanged, or a copy with those mistake rates fixed to
    0 when ``auto_fix`` is set.
    """
    offending = [
        piv for piv in schema.pivs
        if isinstance(piv, UnstablePIV)
        and not piv.has_hazard_covariates
        and not piv.mistakes.bounded
        and not piv.mistakes.any_fixed
    ]
    if not offending:
        return schema

    if not auto_fix:
        piv = offending[0]
        raise EstimabilityError(
            piv=piv.name,
            reason="unstable PIV without hazard covariates has a free, unbounded mistake rate",
        )

    fixed_pivs = []
    for piv in schema.pivs:
        if piv in offending:
            logger.warning("estimability.auto_fix", piv=piv.name, fixed_mistake_rate=0.0)
            mistakes = piv.mistakes.model_copy(update={"fixed_a": 0.0, "fixed_b": 0.0})
            piv = piv.model_copy(update={"mistakes": mistakes})
        fixed_pivs.append(piv)
    return PIVSchema(pivs=fixed_pivs)


def check_run_length(config: RunConfig) -> None:
    """Burn-in must leave at least one retained iteration at both levels."""
    if config.stem_burnin >= config.stem_iter:
        raise ConfigurationError(
            f"stem_burnin ({config.stem_burnin}) must be smaller than stem_iter ({config.stem_iter})"
        )
    if config.gibbs_burnin >= config.gibbs_iter:
        raise ConfigurationError(
            f"gibbs_burnin ({config.gibbs_burnin}) must be smaller than gibbs_iter ({config.gibbs_iter})"
        )
    a_pi, b_pi = config.link_prior
    if a_pi <= 0 or b_pi <= 0:
        raise ConfigurationError(f"link_prior parameters must be positive, got {config.link_prior}")
