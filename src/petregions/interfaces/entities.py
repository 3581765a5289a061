"""Parse BIDS-like attributes from derivative filenames."""

from __future__ import annotations

import logging
from pathlib import Path

from petregions.interfaces.models import AttributeRecord

logger = logging.getLogger(__name__)

_EXTENSIONS: tuple[str, ...] = (".nii.gz", ".nii", ".tsv", ".json", ".csv")

_KEY_TO_FIELD: dict[str, str] = {key: name for name, key in AttributeRecord.FIELD_KEYS.items()}


def _strip_extension(filename: str) -> str:
    for ext in _EXTENSIONS:
        if filename.endswith(ext):
            return filename[: -len(ext)]
    return filename


def _parse_entities(filename: str) -> tuple[dict[str, str], str | None]:
    """A simplified BIDS-like entity parser.

    Parameters
    ----------
    filename : str
        The filename to parse.

    Returns
    -------
    tuple[dict[str, str], str | None]
        Recognised ``key -> value`` entities and the trailing suffix token, if any.
        Empty values are treated as absent.
    """
    entities: dict[str, str] = {}
    suffix = None
    parts = _strip_extension(filename).split("_")
    for i, part in enumerate(parts):
        if "-" not in part:
            if i == len(parts) - 1 and part:
                suffix = part
            continue
        key, value = part.split("-", 1)
        if key in _KEY_TO_FIELD and value:
            entities[key] = value
    return entities, suffix


def parse_attributes(path: Path | str) -> AttributeRecord | None:
    """Parse a derivative filename into an :class:`AttributeRecord`.

    Parameters
    ----------
    path
        Path (or bare filename) of the derivative file.

    Returns
    -------
    AttributeRecord | None
        The parsed record, or ``None`` when the filename has no ``sub`` entity
        or no role suffix.

    Examples
    --------
    >>> rec = parse_attributes("sub-01_ses-02_trc-18FFDG_seg-gtm_tacs.tsv")
    >>> rec.subject, rec.session, rec.segmentation, rec.suffix
    ('01', '02', 'gtm', 'tacs')
    """
    path = Path(path)
    entities, suffix = _parse_entities(path.name)
    if "sub" not in entities:
        logger.debug("Skipping %s: no subject entity", path.name)
        return None
    if suffix is None:
        logger.debug("Skipping %s: no suffix", path.name)
        return None
    fields = {_KEY_TO_FIELD[key]: value for key, value in entities.items()}
    return AttributeRecord(suffix=suffix, source_path=path, **fields)
