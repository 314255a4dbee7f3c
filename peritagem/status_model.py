"""
Inspection Status Model

Canonical lifecycle stages and the status canonicalizer.

Persisted status strings are free text and historically inconsistent in case,
accents and phrasing ("Aguardando Clientes" vs "AGUARDANDO APROVAÇÃO DO
CLIENTE"). Every component derives stage membership through canonicalize();
no other module compares raw status strings.

Stages (LOCKED, exactly 6):
    1 CREATED           - created / needs revision
    2 PCP_APPROVAL      - pending internal (PCP) approval
    3 CLIENT_APPROVAL   - pending client / commercial approval
    4 MAINTENANCE       - in maintenance / workshop
    5 FINAL_REVIEW      - pending final review
    6 FINALIZED         - finalized (terminal)
"""

import re
import unicodedata
from enum import IntEnum
from typing import Any, Dict, List


class Stage(IntEnum):
    """
    Canonical lifecycle stage.

    This enum is LOCKED - the timeline always renders exactly these six.
    """
    CREATED = 1
    PCP_APPROVAL = 2
    CLIENT_APPROVAL = 3
    MAINTENANCE = 4
    FINAL_REVIEW = 5
    FINALIZED = 6

    @classmethod
    def ordered(cls) -> List["Stage"]:
        return sorted(cls)

    @property
    def is_terminal(self) -> bool:
        return self is Stage.FINALIZED

    @property
    def title(self) -> str:
        return STAGE_TITLES[self]

    @property
    def label(self) -> str:
        """Status string written when a record enters this stage."""
        return CANONICAL_LABELS[self]


# -----------------------------------------------------------------------------
# Canonical labels (what the service writes)
# -----------------------------------------------------------------------------
STATUS_CREATED = "PERITAGEM CRIADA"
STATUS_NEEDS_REVISION = "REVISÃO NECESSÁRIA"
STATUS_PCP_APPROVAL = "AGUARDANDO APROVAÇÃO DO PCP"
STATUS_CLIENT_APPROVAL = "AGUARDANDO APROVAÇÃO DO CLIENTE"
STATUS_MAINTENANCE = "EM MANUTENÇÃO"
STATUS_FINAL_REVIEW = "AGUARDANDO CONFERÊNCIA FINAL"
STATUS_FINALIZED = "PROCESSO FINALIZADO"

CANONICAL_LABELS: Dict[Stage, str] = {
    Stage.CREATED: STATUS_CREATED,
    Stage.PCP_APPROVAL: STATUS_PCP_APPROVAL,
    Stage.CLIENT_APPROVAL: STATUS_CLIENT_APPROVAL,
    Stage.MAINTENANCE: STATUS_MAINTENANCE,
    Stage.FINAL_REVIEW: STATUS_FINAL_REVIEW,
    Stage.FINALIZED: STATUS_FINALIZED,
}

# Timeline headings
STAGE_TITLES: Dict[Stage, str] = {
    Stage.CREATED: "Peritagem",
    Stage.PCP_APPROVAL: "Aprovação do PCP",
    Stage.CLIENT_APPROVAL: "Aprovação do Cliente / Comercial",
    Stage.MAINTENANCE: "Manutenção",
    Stage.FINAL_REVIEW: "Conferência Final",
    Stage.FINALIZED: "Processo Finalizado",
}

# -----------------------------------------------------------------------------
# Known phrasings, including legacy variants
# -----------------------------------------------------------------------------
KNOWN_PHRASINGS: Dict[Stage, List[str]] = {
    Stage.CREATED: [
        STATUS_CREATED,
        STATUS_NEEDS_REVISION,
        "PERITAGEM",
        "CRIADA",
        "NOVA PERITAGEM",
        "EM REVISÃO",
        "REVISÃO",
        "AGUARDANDO REVISÃO",
    ],
    Stage.PCP_APPROVAL: [
        STATUS_PCP_APPROVAL,
        "AGUARDANDO PCP",
        "APROVAÇÃO DO PCP",
        "AGUARDANDO APROVAÇÃO PCP",
    ],
    Stage.CLIENT_APPROVAL: [
        STATUS_CLIENT_APPROVAL,
        "AGUARDANDO CLIENTES",
        "AGUARDANDO CLIENTE",
        "AGUARDANDO APROVAÇÃO CLIENTE",
        "AGUARDANDO ORÇAMENTO",
        "ORÇAMENTO ENVIADO",
        "AGUARDANDO COMPRAS",
        "AGUARDANDO COMERCIAL",
    ],
    Stage.MAINTENANCE: [
        STATUS_MAINTENANCE,
        "MANUTENÇÃO",
        "OFICINA",
        "EM OFICINA",
        "PEDIDO LIBERADO",
    ],
    Stage.FINAL_REVIEW: [
        STATUS_FINAL_REVIEW,
        "CONFERÊNCIA FINAL",
        "AGUARDANDO CONFERÊNCIA",
    ],
    Stage.FINALIZED: [
        STATUS_FINALIZED,
        "FINALIZADO",
        "FINALIZADA",
        "ORÇAMENTO FINALIZADO",
        "CONCLUÍDO",
    ],
}

_WHITESPACE_RE = re.compile(r"\s+")


def normalize_status(raw_status: Any) -> str:
    """
    Normalize a raw status for comparison.

    Trims, collapses inner whitespace, case-folds and strips accents.
    Non-string input normalizes to the empty string.
    """
    if not isinstance(raw_status, str):
        return ""
    decomposed = unicodedata.normalize("NFKD", raw_status)
    without_accents = "".join(c for c in decomposed if not unicodedata.combining(c))
    return _WHITESPACE_RE.sub(" ", without_accents).strip().casefold()


def _build_lookup() -> Dict[str, Stage]:
    lookup: Dict[str, Stage] = {}
    for stage, phrasings in KNOWN_PHRASINGS.items():
        for phrasing in phrasings:
            key = normalize_status(phrasing)
            if key in lookup and lookup[key] is not stage:
                raise ValueError(f"Status phrasing '{phrasing}' mapped to two stages")
            lookup[key] = stage
    return lookup


_STATUS_LOOKUP: Dict[str, Stage] = _build_lookup()


def canonicalize(raw_status: Any) -> Stage:
    """
    Map a raw status string to its canonical stage.

    Total: unrecognized or non-string input yields Stage.CREATED.
    """
    return _STATUS_LOOKUP.get(normalize_status(raw_status), Stage.CREATED)


def is_recognized(raw_status: Any) -> bool:
    """True if the status matches a known phrasing (not the stage-1 default)."""
    return normalize_status(raw_status) in _STATUS_LOOKUP


def canonical_label(stage: Stage) -> str:
    """Status string the service writes for a stage."""
    return CANONICAL_LABELS[Stage(stage)]


def phrasings_for(stage: Stage) -> List[str]:
    """All known phrasings for a stage (for store-side filtering)."""
    return list(KNOWN_PHRASINGS[Stage(stage)])
