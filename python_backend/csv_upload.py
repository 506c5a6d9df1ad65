# CSV sample upload parsing for HMPI batch calculation
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Tuple

import numpy as np
import pandas as pd

from hmpi_calculator import MetalMeasurement

logger = logging.getLogger(__name__)

# Metal columns recognised in uploaded files (header match is case-insensitive)
UPLOAD_METALS = ['As', 'Pb', 'Cd', 'Cr', 'Hg', 'Ni', 'Cu', 'Zn', 'Fe', 'Mn']

NON_DETECT_TOKENS = ('ND', '<0.001')
DEFAULT_DETECTION_LIMIT = 0.001


@dataclass
class UploadedSample:
    """A sample row read from an uploaded CSV file."""

    sample_id: str
    measurements: List[MetalMeasurement] = field(default_factory=list)
    latitude: float = 0.0
    longitude: float = 0.0
    date: str = ''
    location: str = ''

    def as_pair(self) -> Tuple[str, List[MetalMeasurement]]:
        return self.sample_id, self.measurements

    def to_dict(self) -> Dict[str, Any]:
        return {
            'sampleId': self.sample_id,
            'latitude': self.latitude,
            'longitude': self.longitude,
            'date': self.date,
            'location': self.location,
            'concentrations': [m.to_dict() for m in self.measurements]
        }


def _text(value: Any) -> str:
    if value is None or pd.isnull(value):
        return ''
    return str(value).strip()


def _number(value: Any, default: float) -> float:
    number = pd.to_numeric(_text(value), errors='coerce')
    return float(number) if np.isfinite(number) else default


def _detection_limit(value: Any) -> float:
    limit = _number(value, DEFAULT_DETECTION_LIMIT)
    return limit if limit > 0 else DEFAULT_DETECTION_LIMIT


def _row_measurements(row: Dict[str, str]) -> List[MetalMeasurement]:
    unit = row.get('unit') or 'mg/L'
    measurements = []

    for metal in UPLOAD_METALS:
        key = metal.lower()
        raw = row.get(key) or row.get(f'{key}_concentration') or ''

        if raw in NON_DETECT_TOKENS:
            measurements.append(MetalMeasurement(
                metal=metal,
                concentration=0.0,
                unit=unit,
                is_non_detect=True,
                detection_limit=_detection_limit(row.get(f'lod_{key}'))
            ))
            continue

        concentration = pd.to_numeric(raw, errors='coerce')
        # inf, nan and negative readings are unusable
        if raw == '' or not np.isfinite(concentration) or concentration < 0:
            continue
        measurements.append(MetalMeasurement(
            metal=metal,
            concentration=float(concentration),
            unit=unit
        ))

    return measurements


def parse_samples_csv(source) -> List[UploadedSample]:
    """
    Read samples from a CSV file path or file-like object.

    Metal values come from `<metal>` or `<metal>_concentration` columns;
    `ND` / `<0.001` mark non-detects whose limit is read from `lod_<metal>`
    (default 0.001 mg/L). Rows without any usable metal value are dropped.
    """
    df = pd.read_csv(source, dtype=str, keep_default_na=False, skipinitialspace=True)
    df.columns = [str(c).strip().lower() for c in df.columns]

    samples: List[UploadedSample] = []
    today = date.today().isoformat()

    for idx, record in enumerate(df.to_dict(orient='records')):
        row = {k: _text(v) for k, v in record.items()}
        measurements = _row_measurements(row)
        if not measurements:
            continue

        samples.append(UploadedSample(
            sample_id=row.get('sample_id') or f'Sample_{idx + 1}',
            measurements=measurements,
            latitude=_number(row.get('latitude'), 0.0),
            longitude=_number(row.get('longitude'), 0.0),
            date=row.get('date') or today,
            location=row.get('location_name', '')
        ))

    logger.info(f"Parsed {len(samples)} samples from {len(df)} CSV rows")
    return samples
