# Heavy Metal Pollution Index calculation engine (HPI, HEI, MI)
import logging
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Any, List, Tuple, Optional, Iterable, Sequence

logger = logging.getLogger(__name__)

# Divisors converting to mg/L. ppm is taken as mg/L for dilute water samples.
UNIT_DIVISORS = {
    'mg/L': 1,
    'ug/L': 1000,
    'µg/L': 1000,  # micro sign
    'μg/L': 1000,  # greek mu
    'ppb': 1000,
    'ppm': 1
}

NON_DETECT_POLICIES = ('zero', 'half_lod', 'lod', 'exclude')
DEFAULT_NON_DETECT_POLICY = 'half_lod'

# Category thresholds (HPI, HEI, MI), most severe first
CATEGORY_THRESHOLDS = [
    ('Hazardous', 70, 40, 40),
    ('Poor', 30, 20, 20),
    ('Moderate', 15, 10, 10)
]

FORMULA = 'HPI = Σ(Wi × Qi) / Σ(Wi), HEI = Σ(Ci / Li), MI = HEI / n'

CSV_HEADERS = ['Sample', 'HPI', 'HEI', 'MI', 'Category', 'Metals_Analyzed', 'High_Risk_Metals']


@dataclass(frozen=True)
class MetalMeasurement:
    """A single metal reading for one water sample."""

    metal: str
    concentration: float
    unit: str = 'mg/L'
    is_non_detect: bool = False
    detection_limit: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'MetalMeasurement':
        """
        Build a measurement from its JSON shape:
        {metal, concentration, unit, isNonDetect, detectionLimit?}

        Raises ValueError when the structure is unusable (no metal symbol,
        non-numeric, non-finite or negative concentration or detection
        limit, non-boolean isNonDetect).
        """
        if not isinstance(data, dict):
            raise ValueError('Each concentration entry must be an object')

        metal = data.get('metal')
        if not isinstance(metal, str) or not metal.strip():
            raise ValueError('Concentration entry is missing a metal symbol')

        concentration = _as_number(data.get('concentration', 0), 'concentration', metal)
        if concentration < 0:
            raise ValueError(f'Negative concentration for {metal}')

        detection_limit = data.get('detectionLimit')
        if detection_limit is not None:
            detection_limit = _as_number(detection_limit, 'detectionLimit', metal)
            if detection_limit < 0:
                raise ValueError(f'Negative detectionLimit for {metal}')

        is_non_detect = data.get('isNonDetect', False)
        if not isinstance(is_non_detect, bool):
            raise ValueError(f'isNonDetect must be true or false for {metal}')

        return cls(
            metal=metal.strip(),
            concentration=concentration,
            unit=str(data.get('unit') or 'mg/L'),
            is_non_detect=is_non_detect,
            detection_limit=detection_limit
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'metal': self.metal,
            'concentration': self.concentration,
            'unit': self.unit,
            'isNonDetect': self.is_non_detect
        }
        if self.detection_limit is not None:
            data['detectionLimit'] = self.detection_limit
        return data


def _as_number(value: Any, name: str, metal: str) -> float:
    # bool is an int subclass; JSON true/false is not a concentration
    if isinstance(value, bool):
        raise ValueError(f'Non-numeric {name} for {metal}')
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValueError(f'Non-numeric {name} for {metal}')
    if not math.isfinite(number):
        raise ValueError(f'Non-finite {name} for {metal}')
    return number


@dataclass(frozen=True)
class RegulatoryStandard:
    metal: str
    permissible_limit: float  # mg/L
    health_weight: float
    standard: str = 'Custom'

    def to_dict(self) -> Dict[str, Any]:
        return {
            'metal': self.metal,
            'permissibleLimit': self.permissible_limit,
            'healthWeight': self.health_weight,
            'standard': self.standard
        }


class StandardSet:
    """
    Ordered, read-only table of regulatory standards keyed by metal symbol.

    Each metal may appear only once; a duplicate row is a configuration
    error and is rejected when the set is built.
    """

    def __init__(self, name: str, rows: Iterable[RegulatoryStandard]):
        self._name = name
        self._rows: Tuple[RegulatoryStandard, ...] = tuple(rows)
        self._by_metal: Dict[str, RegulatoryStandard] = {}
        for row in self._rows:
            if row.metal in self._by_metal:
                raise ValueError(f'Duplicate standard for metal {row.metal} in {name}')
            if row.permissible_limit <= 0 or row.health_weight <= 0:
                raise ValueError(f'Standard for {row.metal} needs a positive limit and weight')
            self._by_metal[row.metal] = row

    @classmethod
    def from_dicts(cls, name: str, rows: Iterable[Dict[str, Any]]) -> 'StandardSet':
        """Build a custom set from {metal, permissibleLimit, healthWeight, standard?} rows."""
        return cls(name, [
            RegulatoryStandard(
                metal=row['metal'],
                permissible_limit=float(row['permissibleLimit']),
                health_weight=float(row['healthWeight']),
                standard=row.get('standard', name)
            )
            for row in rows
        ])

    @property
    def name(self) -> str:
        return self._name

    @property
    def rows(self) -> Tuple[RegulatoryStandard, ...]:
        return self._rows

    @property
    def metals(self) -> List[str]:
        return [row.metal for row in self._rows]

    def get(self, metal: str) -> Optional[RegulatoryStandard]:
        return self._by_metal.get(metal)

    def __contains__(self, metal: str) -> bool:
        return metal in self._by_metal

    def __iter__(self):
        return iter(self._rows)

    def __len__(self) -> int:
        return len(self._rows)

    def to_list(self) -> List[Dict[str, Any]]:
        return [row.to_dict() for row in self._rows]


def _standard_table(name: str, limits: List[Tuple[str, float, float]]) -> StandardSet:
    return StandardSet(name, [RegulatoryStandard(metal, limit, weight, name)
                              for metal, limit, weight in limits])


# WHO drinking water guideline values (mg/L) and health weights (default)
WHO_STANDARDS = _standard_table('WHO', [
    ('As', 0.01, 10.0),   # Arsenic
    ('Pb', 0.01, 8.0),    # Lead
    ('Cd', 0.003, 9.0),   # Cadmium
    ('Cr', 0.05, 6.0),    # Chromium
    ('Hg', 0.006, 9.5),   # Mercury
    ('Ni', 0.07, 5.0),    # Nickel
    ('Cu', 2.0, 3.0),     # Copper
    ('Zn', 3.0, 2.0),     # Zinc
    ('Fe', 0.3, 2.5),     # Iron
    ('Mn', 0.4, 3.5)      # Manganese
])

# EPA maximum contaminant levels (mg/L)
EPA_STANDARDS = _standard_table('EPA', [
    ('As', 0.01, 10.0),
    ('Pb', 0.015, 8.0),
    ('Cd', 0.005, 9.0),
    ('Cr', 0.1, 6.0),
    ('Hg', 0.002, 9.5),
    ('Ni', 0.1, 5.0),
    ('Cu', 1.3, 3.0)
])

STANDARD_SETS = {
    'WHO': WHO_STANDARDS,
    'EPA': EPA_STANDARDS
}


def get_standard_set(name: str) -> Optional[StandardSet]:
    """Look up a built-in standard set by name (case-insensitive)."""
    if not name:
        return None
    return STANDARD_SETS.get(str(name).strip().upper())


def convert_to_mg_per_l(concentration: float, unit: str) -> float:
    """Convert a concentration to mg/L. Unknown units are returned unchanged."""
    return concentration / UNIT_DIVISORS.get(unit, 1)


def resolve_non_detect(concentration: float, is_non_detect: bool,
                       detection_limit: Optional[float] = None,
                       policy: str = DEFAULT_NON_DETECT_POLICY) -> Optional[float]:
    """
    Resolve a (unit-normalized) concentration according to the non-detect policy.
    Returns None when the measurement is to be excluded.
    """
    if not is_non_detect:
        return concentration

    if policy == 'zero':
        return 0.0
    if policy == 'lod':
        return detection_limit or 0.0
    if policy == 'exclude':
        return None
    # half_lod, also used for unrecognized policy names
    return detection_limit / 2 if detection_limit else 0.0


def determine_category(hpi: float, hei: float, mi: float) -> str:
    """
    Classify a sample from its indices; the worst tier reached by any
    index wins.
    HPI: <15 Safe, 15-30 Moderate, 30-70 Poor, >70 Hazardous
    HEI/MI: <10 Safe, 10-20 Moderate, 20-40 Poor, >40 Hazardous
    """
    for category, hpi_limit, hei_limit, mi_limit in CATEGORY_THRESHOLDS:
        if hpi > hpi_limit or hei > hei_limit or mi > mi_limit:
            return category
    return 'Safe'


def flag_ratio(ratio: float) -> str:
    if ratio <= 0.5:
        return 'Safe'
    elif ratio <= 1.0:
        return 'Caution'
    return 'Exceeded'


@dataclass(frozen=True)
class MetalAnalysisEntry:
    metal: str
    concentration: float
    permissible_limit: float
    ratio: float
    contribution: float
    flag: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            'metal': self.metal,
            'concentration': self.concentration,
            'permissibleLimit': self.permissible_limit,
            'ratio': self.ratio,
            'contribution': self.contribution,
            'flag': self.flag
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'MetalAnalysisEntry':
        return cls(
            metal=data['metal'],
            concentration=float(data.get('concentration', 0)),
            permissible_limit=float(data.get('permissibleLimit', 0)),
            ratio=float(data.get('ratio', 0)),
            contribution=float(data.get('contribution', 0)),
            flag=data.get('flag', 'Safe')
        )


@dataclass(frozen=True)
class CalculationParameters:
    standard: str
    non_detect_handling: str
    metals: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'standard': self.standard,
            'nonDetectHandling': self.non_detect_handling,
            'metals': list(self.metals)
        }


@dataclass(frozen=True)
class CalculationDetails:
    parameters: CalculationParameters
    formula: str = FORMULA
    timestamp: str = ''

    def to_dict(self) -> Dict[str, Any]:
        return {
            'formula': self.formula,
            'parameters': self.parameters.to_dict(),
            'timestamp': self.timestamp
        }


@dataclass(frozen=True)
class IndexResult:
    hpi: float
    hei: float
    mi: float
    category: str
    metal_analysis: Tuple[MetalAnalysisEntry, ...]
    calculation_details: CalculationDetails

    @property
    def high_risk_metals(self) -> List[str]:
        return [entry.metal for entry in self.metal_analysis if entry.flag == 'Exceeded']

    def to_dict(self) -> Dict[str, Any]:
        return {
            'hpi': self.hpi,
            'hei': self.hei,
            'mi': self.mi,
            'category': self.category,
            'metalAnalysis': [entry.to_dict() for entry in self.metal_analysis],
            'calculationDetails': self.calculation_details.to_dict()
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'IndexResult':
        """Rebuild a result from its JSON shape (e.g. results posted back for export)."""
        details = data.get('calculationDetails') or {}
        parameters = details.get('parameters') or {}
        metals = parameters.get('metals') or []
        if isinstance(metals, str):
            metals = [m.strip() for m in metals.split(',') if m.strip()]
        return cls(
            hpi=float(data.get('hpi', 0)),
            hei=float(data.get('hei', 0)),
            mi=float(data.get('mi', 0)),
            category=data.get('category', 'Safe'),
            metal_analysis=tuple(MetalAnalysisEntry.from_dict(entry)
                                 for entry in data.get('metalAnalysis') or []),
            calculation_details=CalculationDetails(
                parameters=CalculationParameters(
                    standard=parameters.get('standard', parameters.get('standards', '')),
                    non_detect_handling=parameters.get('nonDetectHandling', DEFAULT_NON_DETECT_POLICY),
                    metals=tuple(metals)
                ),
                formula=details.get('formula', FORMULA),
                timestamp=details.get('timestamp', '')
            )
        )


@dataclass(frozen=True)
class SampleResult:
    sample_id: str
    result: IndexResult

    def to_dict(self) -> Dict[str, Any]:
        return {'sampleId': self.sample_id, 'result': self.result.to_dict()}


class HMPICalculator:
    """
    Computes HPI, HEI and MI for heavy metal measurements against one
    standard set. Instances hold no mutable state and can be shared
    between threads.
    """

    def __init__(self, standards: StandardSet = WHO_STANDARDS,
                 non_detect_policy: str = DEFAULT_NON_DETECT_POLICY):
        if non_detect_policy not in NON_DETECT_POLICIES:
            raise ValueError(f'Unknown non-detect policy: {non_detect_policy}')
        self._standards = standards
        self._policy = non_detect_policy

    @property
    def standards(self) -> StandardSet:
        return self._standards

    @property
    def non_detect_policy(self) -> str:
        return self._policy

    def _resolved(self, measurements: Sequence[MetalMeasurement]) -> List[Tuple[MetalMeasurement, RegulatoryStandard, float]]:
        """Matching, non-excluded measurements with their standard and resolved mg/L value."""
        resolved = []
        for m in measurements:
            standard = self._standards.get(m.metal)
            if standard is None:
                logger.debug(f"No {self._standards.name} standard for {m.metal}, skipped")
                continue
            conc = resolve_non_detect(convert_to_mg_per_l(m.concentration, m.unit),
                                      m.is_non_detect, m.detection_limit, self._policy)
            if conc is None:
                continue
            resolved.append((m, standard, conc))
        return resolved

    def calculate_hpi(self, measurements: Sequence[MetalMeasurement]) -> float:
        """
        Heavy Metal Pollution Index: HPI = Σ(Wi × Qi) / Σ(Wi)
        Qi = (Ci - 0) / (Si - 0) × 100 with an ideal concentration of 0,
        Wi = health weight of the metal.
        """
        numerator = 0.0
        denominator = 0.0
        for _, standard, conc in self._resolved(measurements):
            qi = conc / standard.permissible_limit * 100
            wi = standard.health_weight
            numerator += wi * qi
            denominator += wi
        return numerator / denominator if denominator > 0 else 0.0

    def calculate_hei(self, measurements: Sequence[MetalMeasurement]) -> float:
        """Heavy Metal Evaluation Index: HEI = Σ(Ci / Li)"""
        return sum(conc / standard.permissible_limit
                   for _, standard, conc in self._resolved(measurements))

    def calculate_mi(self, measurements: Sequence[MetalMeasurement]) -> float:
        """Metal Index: MI = HEI / n"""
        n = len(self._resolved(measurements))
        return self.calculate_hei(measurements) / n if n > 0 else 0.0

    def analyze_metals(self, measurements: Sequence[MetalMeasurement]) -> List[MetalAnalysisEntry]:
        analysis = []
        for m, standard, conc in self._resolved(measurements):
            ratio = conc / standard.permissible_limit
            analysis.append(MetalAnalysisEntry(
                metal=m.metal,
                concentration=conc,
                permissible_limit=standard.permissible_limit,
                ratio=ratio,
                contribution=ratio * standard.health_weight,
                flag=flag_ratio(ratio)
            ))
        return analysis

    def calculate(self, measurements: Sequence[MetalMeasurement]) -> IndexResult:
        hpi = self.calculate_hpi(measurements)
        hei = self.calculate_hei(measurements)
        mi = self.calculate_mi(measurements)

        return IndexResult(
            hpi=round(hpi, 2),
            hei=round(hei, 2),
            mi=round(mi, 2),
            category=determine_category(hpi, hei, mi),
            metal_analysis=tuple(self.analyze_metals(measurements)),
            calculation_details=CalculationDetails(
                parameters=CalculationParameters(
                    standard=self._standards.name,
                    non_detect_handling=self._policy,
                    metals=tuple(m.metal for m in measurements)
                ),
                timestamp=datetime.now(timezone.utc).isoformat()
            )
        )

    def batch_calculate(self, samples: Iterable[Tuple[str, Sequence[MetalMeasurement]]],
                        max_workers: Optional[int] = None) -> List[SampleResult]:
        """
        Calculate every (sample_id, measurements) pair. Output order follows
        input order, also when spread over a thread pool.
        """
        samples = list(samples)
        if max_workers and max_workers > 1 and len(samples) > 1:
            with ThreadPoolExecutor(max_workers=max_workers) as executor:
                results = list(executor.map(lambda s: self.calculate(s[1]), samples))
        else:
            results = [self.calculate(measurements) for _, measurements in samples]
        return [SampleResult(sample_id=sample_id, result=result)
                for (sample_id, _), result in zip(samples, results)]


def _format_value(value: float) -> str:
    # 200.0 -> "200", 0.17 -> "0.17"
    value = float(value)
    return str(int(value)) if value.is_integer() else str(value)


def export_summary_rows(results: Sequence[IndexResult]) -> List[List[str]]:
    """Summary table (header first) with one row per result."""
    rows = [list(CSV_HEADERS)]
    for index, result in enumerate(results):
        rows.append([
            f'Sample_{index + 1}',
            _format_value(result.hpi),
            _format_value(result.hei),
            _format_value(result.mi),
            result.category,
            str(len(result.metal_analysis)),
            ';'.join(result.high_risk_metals) or 'None'
        ])
    return rows


def export_to_csv(results: Sequence[IndexResult]) -> str:
    """Export results as CSV text: header line plus one line per result."""
    return '\n'.join(','.join(row) for row in export_summary_rows(results))
