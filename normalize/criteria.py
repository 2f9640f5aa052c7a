"""
Criterion catalog files.

Accepts YAML or JSON (JSON is valid YAML), either a bare list of criteria or
an export document ``{"criteria": [...]}``. Each entry needs an integer id,
an area (``area`` or ``areaOfConcentration``), a subarea and a description.
"""

from typing import List, Any

import yaml

from normalize.models import Criterion
from sync.errors import ConfigurationError


def parse_criteria(doc: Any) -> List[Criterion]:
    entries = doc.get('criteria') if isinstance(doc, dict) else doc
    if not isinstance(entries, list) or not entries:
        raise ConfigurationError("no criteria found in catalog")
    criteria: List[Criterion] = []
    seen = set()
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict):
            raise ConfigurationError(f"criterion #{index} is not a mapping")
        try:
            cid = int(entry['id'])
        except (KeyError, TypeError, ValueError) as ex:
            raise ConfigurationError(f"criterion #{index} has no integer id") from ex
        if cid in seen:
            raise ConfigurationError(f"duplicate criterion id {cid}")
        seen.add(cid)
        area = entry.get('area') or entry.get('areaOfConcentration') or ''
        criteria.append(Criterion(cid, str(area), str(entry.get('subarea') or ''), str(entry.get('description') or '')))
    return criteria


def load_criteria(path: str) -> List[Criterion]:
    try:
        with open(path, 'r', encoding='utf-8') as f:
            doc = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as ex:
        raise ConfigurationError(f"cannot read criteria file {path}: {ex}") from ex
    return parse_criteria(doc)
