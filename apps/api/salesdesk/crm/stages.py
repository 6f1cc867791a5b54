from __future__ import annotations

import logging
import unicodedata
from enum import Enum


logger = logging.getLogger("salesdesk.crm.stages")


class DealStage(str, Enum):
    LEAD = "LEAD"
    CONTACTED = "CONTACTED"
    PROPOSAL = "PROPOSAL"
    NEGOTIATION = "NEGOTIATION"
    CLOSED_WON = "CLOSED_WON"
    CLOSED_LOST = "CLOSED_LOST"


class StageLabel(str, Enum):
    SOLICITUD = "Solicitud"
    CONTACTADO = "Contactado"
    PROPUESTA = "Propuesta"
    NEGOCIACION = "Negociación"
    GANADA = "Ganada"
    PERDIDA = "Perdida"


# Unknown input is not the same thing as a brand-new deal.
UNMAPPED_STAGE_DEFAULT = DealStage.LEAD
NEW_DEAL_STAGE = DealStage.CONTACTED

STAGE_ORDER: tuple[DealStage, ...] = (
    DealStage.LEAD,
    DealStage.CONTACTED,
    DealStage.PROPOSAL,
    DealStage.NEGOTIATION,
    DealStage.CLOSED_WON,
    DealStage.CLOSED_LOST,
)
TERMINAL_STAGES = frozenset({DealStage.CLOSED_WON, DealStage.CLOSED_LOST})

_LABEL_TO_STAGE: dict[StageLabel, DealStage] = {
    StageLabel.SOLICITUD: DealStage.LEAD,
    StageLabel.CONTACTADO: DealStage.CONTACTED,
    StageLabel.PROPUESTA: DealStage.PROPOSAL,
    StageLabel.NEGOCIACION: DealStage.NEGOTIATION,
    StageLabel.GANADA: DealStage.CLOSED_WON,
    StageLabel.PERDIDA: DealStage.CLOSED_LOST,
}
_STAGE_TO_LABEL: dict[DealStage, StageLabel] = {stage: label for label, stage in _LABEL_TO_STAGE.items()}

_LEGACY_LABELS: dict[str, DealStage] = {
    "solicitud de producto": DealStage.LEAD,
    "envio de propuesta": DealStage.PROPOSAL,
    "cerrada (ganada)": DealStage.CLOSED_WON,
    "no aceptado (perdida)": DealStage.CLOSED_LOST,
}

_DEFAULT_PROBABILITY: dict[DealStage, int] = {
    DealStage.CLOSED_WON: 100,
    DealStage.CLOSED_LOST: 0,
}


def _fold(value: str) -> str:
    decomposed = unicodedata.normalize("NFKD", value.strip().lower())
    return "".join(char for char in decomposed if not unicodedata.combining(char))


_LOOKUP: dict[str, DealStage] = {
    **{_fold(label.value): stage for label, stage in _LABEL_TO_STAGE.items()},
    **{_fold(stage.value): stage for stage in DealStage},
    **_LEGACY_LABELS,
}


def _lookup(value: object) -> DealStage | None:
    if isinstance(value, DealStage):
        return value
    if isinstance(value, StageLabel):
        return _LABEL_TO_STAGE[value]
    if not isinstance(value, str):
        return None
    return _LOOKUP.get(_fold(value))


def is_known_stage(value: object) -> bool:
    return _lookup(value) is not None


def to_persistence(value: object) -> DealStage:
    """Translate a display label (or a persistence code) into the stored stage code.

    Never raises: unrecognised input is logged and mapped to ``UNMAPPED_STAGE_DEFAULT``.
    """

    stage = _lookup(value)
    if stage is None:
        logger.warning("stage.unmapped", extra={"stage": str(value)[:64]})
        return UNMAPPED_STAGE_DEFAULT
    return stage


def to_display(value: object) -> StageLabel:
    """Translate a stored stage code into its display label. Never raises."""

    stage = _lookup(value)
    if stage is None:
        logger.warning("stage.unmapped", extra={"stage": str(value)[:64]})
        stage = UNMAPPED_STAGE_DEFAULT
    return _STAGE_TO_LABEL[stage]


def is_terminal(stage: DealStage | str) -> bool:
    return to_persistence(stage) in TERMINAL_STAGES


def default_probability(stage: DealStage) -> int | None:
    return _DEFAULT_PROBABILITY.get(stage)
