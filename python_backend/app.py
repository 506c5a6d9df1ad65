# Heavy Metal Pollution Index (HPI / HEI / MI) calculation API
import os
import signal
import sys
from typing import Dict, Any, List, Tuple
from functools import lru_cache
from datetime import datetime, timezone
import numpy as np

from flask import Flask, jsonify, request, make_response
from flask_cors import CORS

from hmpi_calculator import (
    HMPICalculator, MetalMeasurement, IndexResult, SampleResult,
    STANDARD_SETS, CATEGORY_THRESHOLDS, FORMULA, DEFAULT_NON_DETECT_POLICY,
    NON_DETECT_POLICIES, get_standard_set, export_to_csv
)
from csv_upload import parse_samples_csv

# Logging configuration
import logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

SERVICE_NAME = "Heavy Metal Pollution Index API"
SERVICE_VERSION = "1.0.0"

DEFAULT_CORS_ORIGINS = "http://localhost:3000,http://localhost:5173,https://yourdomain.com"


class RequestError(ValueError):
    """Structurally invalid request; reported to the client as HTTP 400."""


def load_settings(config: Dict[str, Any]) -> None:
    """Read service settings from environment variables into the Flask config."""
    config['HMPI_DEFAULT_STANDARD'] = os.environ.get('HMPI_DEFAULT_STANDARD', 'WHO').upper()
    config['HMPI_NON_DETECT_POLICY'] = os.environ.get('HMPI_NON_DETECT_POLICY', DEFAULT_NON_DETECT_POLICY)
    config['HMPI_BATCH_WORKERS'] = int(os.environ.get('HMPI_BATCH_WORKERS') or 1)
    config['CORS_ORIGINS'] = [o.strip() for o in
                              os.environ.get('CORS_ORIGINS', DEFAULT_CORS_ORIGINS).split(',') if o.strip()]

    if config['HMPI_NON_DETECT_POLICY'] not in NON_DETECT_POLICIES:
        raise ValueError(f"HMPI_NON_DETECT_POLICY must be one of {', '.join(NON_DETECT_POLICIES)}")
    if config['HMPI_DEFAULT_STANDARD'] not in STANDARD_SETS:
        raise ValueError(f"HMPI_DEFAULT_STANDARD must be one of {', '.join(STANDARD_SETS)}")


@lru_cache(maxsize=None)
def get_calculator(standard: str, policy: str) -> HMPICalculator:
    """Calculators are immutable, one per (standard, policy) pair is enough"""
    return HMPICalculator(STANDARD_SETS[standard], non_detect_policy=policy)


def calculator_for(standard: Any) -> Tuple[str, HMPICalculator]:
    name = standard or app.config['HMPI_DEFAULT_STANDARD']
    standard_set = get_standard_set(name)
    if standard_set is None:
        raise RequestError(f"Invalid standard type: {name}")
    return standard_set.name, get_calculator(standard_set.name, app.config['HMPI_NON_DETECT_POLICY'])


def parse_measurements(concentrations: Any) -> List[MetalMeasurement]:
    if not isinstance(concentrations, list):
        raise RequestError("Invalid concentrations data")
    return [MetalMeasurement.from_dict(c) for c in concentrations]


def parse_samples(samples: Any) -> List[Tuple[str, List[MetalMeasurement]]]:
    if not isinstance(samples, list):
        raise RequestError("Invalid samples data")
    parsed = []
    for idx, sample in enumerate(samples):
        if not isinstance(sample, dict):
            raise RequestError("Each sample must be an object")
        sample_id = str(sample.get('sampleId') or f"Sample_{idx + 1}")
        parsed.append((sample_id, parse_measurements(sample.get('concentrations'))))
    return parsed


def request_body() -> Dict[str, Any]:
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        raise RequestError("Request body must be a JSON object")
    return body


def calculate_statistics(results: List[SampleResult]) -> Dict[str, Any]:
    """Summary statistics over a batch of results"""
    if not results:
        return {}

    hpi_values = [r.result.hpi for r in results]
    hei_values = [r.result.hei for r in results]
    mi_values = [r.result.mi for r in results]
    categories = [r.result.category for r in results]

    return {
        "total_samples": len(results),
        "hazardous_sites": categories.count('Hazardous'),
        "poor_sites": categories.count('Poor'),
        "moderate_sites": categories.count('Moderate'),
        "safe_sites": categories.count('Safe'),
        "average_indices": {
            "HPI": round(float(np.mean(hpi_values)), 2),
            "HEI": round(float(np.mean(hei_values)), 2),
            "MI": round(float(np.mean(mi_values)), 2)
        },
        "max_hpi": round(float(np.max(hpi_values)), 2)
    }


def error_response(message: str, status: int):
    return jsonify({"success": False, "error": message}), status


# Flask application
app = Flask(__name__)
load_settings(app.config)

# Configure CORS for your website
CORS(app, resources={
    r"/api/*": {
        "origins": app.config['CORS_ORIGINS'],
        "methods": ["GET", "POST", "OPTIONS"],
        "allow_headers": ["Content-Type", "Authorization"]
    }
})


@app.route('/health', methods=['GET'])
def health():
    return jsonify({
        "status": "healthy",
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat()
    })


@app.route('/api/calculate/hmpi', methods=['POST'])
def calculate_hmpi():
    """
    Calculate HPI, HEI and MI for one sample.
    Body: {"concentrations": [...], "standard": "WHO" | "EPA"}
    """
    try:
        body = request_body()
        standard, calculator = calculator_for(body.get('standard'))
        measurements = parse_measurements(body.get('concentrations'))

        result = calculator.calculate(measurements)
        logger.info(f"HMPI calculated for {len(measurements)} measurements ({standard}): {result.category}")

        return jsonify({
            "success": True,
            "result": result.to_dict(),
            "standard": standard
        })

    except ValueError as e:
        return error_response(str(e), 400)
    except Exception as e:
        logger.error(f"HMPI calculation error: {e}", exc_info=True)
        return error_response("Calculation failed", 500)


@app.route('/api/calculate/batch', methods=['POST'])
def calculate_batch():
    """
    Calculate indices for several samples.
    Body: {"samples": [{"sampleId": ..., "concentrations": [...]}], "standard": ...}
    """
    try:
        body = request_body()
        standard, calculator = calculator_for(body.get('standard'))
        samples = parse_samples(body.get('samples'))

        results = calculator.batch_calculate(samples, max_workers=app.config['HMPI_BATCH_WORKERS'])
        logger.info(f"Batch calculation completed for {len(results)} samples ({standard})")

        return jsonify({
            "success": True,
            "results": [r.to_dict() for r in results],
            "standard": standard,
            "total": len(results),
            "statistics": calculate_statistics(results)
        })

    except ValueError as e:
        return error_response(str(e), 400)
    except Exception as e:
        logger.error(f"Batch calculation error: {e}", exc_info=True)
        return error_response("Batch calculation failed", 500)


@app.route('/api/standards/<standard_type>', methods=['GET'])
def get_standards(standard_type):
    """Regulatory standard table (WHO or EPA)"""
    standard_set = get_standard_set(standard_type)
    if standard_set is None:
        return error_response("Invalid standard type", 400)
    return jsonify({"standards": standard_set.to_list(), "type": standard_set.name})


@app.route('/api/indices-info', methods=['GET'])
def indices_info():
    """Get information about pollution indices"""
    hazardous, poor, moderate = CATEGORY_THRESHOLDS
    info = {
        "formula": FORMULA,
        "indices": {
            "HPI": {
                "name": "Heavy Metal Pollution Index",
                "description": "Weighted average of concentration as percent of permissible limit, weighted by health significance",
                "formula": "HPI = Σ(Wᵢ × Qᵢ) / Σ(Wᵢ), Qᵢ = Cᵢ / Sᵢ × 100",
                "interpretation": {
                    f"<= {moderate[1]}": "Safe",
                    f"{moderate[1]} - {poor[1]}": "Moderate",
                    f"{poor[1]} - {hazardous[1]}": "Poor",
                    f"> {hazardous[1]}": "Hazardous"
                }
            },
            "HEI": {
                "name": "Heavy Metal Evaluation Index",
                "description": "Sum of ratios of metal concentrations to permissible limits",
                "formula": "HEI = Σ(Cᵢ / Lᵢ)",
                "interpretation": {
                    f"<= {moderate[2]}": "Safe",
                    f"{moderate[2]} - {poor[2]}": "Moderate",
                    f"{poor[2]} - {hazardous[2]}": "Poor",
                    f"> {hazardous[2]}": "Hazardous"
                }
            },
            "MI": {
                "name": "Metal Index",
                "description": "Heavy Metal Evaluation Index divided by the number of metals analysed",
                "formula": "MI = HEI / n",
                "interpretation": {
                    f"<= {moderate[3]}": "Safe",
                    f"{moderate[3]} - {poor[3]}": "Moderate",
                    f"{poor[3]} - {hazardous[3]}": "Poor",
                    f"> {hazardous[3]}": "Hazardous"
                }
            }
        },
        "metal_flags": {
            "Safe": "ratio <= 0.5",
            "Caution": "0.5 < ratio <= 1.0",
            "Exceeded": "ratio > 1.0"
        },
        "non_detect_policy": app.config['HMPI_NON_DETECT_POLICY'],
        "units": ["mg/L", "ug/L", "ppb", "ppm"]
    }
    return jsonify(info)


@app.route('/api/upload/csv', methods=['POST'])
def upload_csv():
    """Parse an uploaded CSV of samples and calculate indices for each (WHO standard by default)"""
    try:
        file = request.files.get('file')
        if not file:
            return error_response("No file uploaded", 400)

        standard, calculator = calculator_for(request.form.get('standard'))
        samples = parse_samples_csv(file.stream)
        results = calculator.batch_calculate([s.as_pair() for s in samples],
                                             max_workers=app.config['HMPI_BATCH_WORKERS'])

        return jsonify({
            "success": True,
            "message": f"Processed {len(samples)} samples",
            "samples": len(samples),
            "results": [dict(r.to_dict(), **{k: v for k, v in s.to_dict().items() if k != 'concentrations'})
                        for s, r in zip(samples, results)],
            "statistics": calculate_statistics(results),
            "standard": standard,
            "processed_at": datetime.now(timezone.utc).isoformat()
        })

    except ValueError as e:
        return error_response(f"Failed to process CSV file: {e}", 400)
    except Exception as e:
        logger.error(f"CSV processing error: {e}", exc_info=True)
        return error_response("Failed to process CSV file", 500)


@app.route('/api/export/csv', methods=['POST'])
def export_csv():
    """Export posted results ({results: [{sampleId, result}]}) as a CSV attachment"""
    try:
        results = request_body().get('results')
        if not isinstance(results, list):
            raise RequestError("Invalid results data")

        index_results = [IndexResult.from_dict(r.get('result', r)) for r in results if isinstance(r, dict)]
        resp = make_response(export_to_csv(index_results))
        resp.headers['Content-Type'] = 'text/csv'
        resp.headers['Content-Disposition'] = 'attachment; filename="hmpi_results.csv"'
        return resp

    except (ValueError, KeyError, TypeError, AttributeError) as e:
        return error_response(f"Invalid results data: {e}", 400)
    except Exception as e:
        logger.error(f"CSV export error: {e}", exc_info=True)
        return error_response("Export failed", 500)


def signal_handler(sig, frame):
    logger.info('Gracefully shutting down Flask server')
    get_calculator.cache_clear()
    sys.exit(0)


if __name__ == '__main__':
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    host = os.environ.get('FLASK_HOST', '0.0.0.0')
    port = int(os.environ.get('FLASK_PORT') or os.environ.get('PORT', '5000'))
    debug = os.environ.get('FLASK_DEBUG', '0') == '1'

    logger.info(f"Starting {SERVICE_NAME} on {host}:{port}")
    logger.info("Available endpoints:")
    logger.info("  POST /api/calculate/hmpi - Single sample HPI/HEI/MI")
    logger.info("  POST /api/calculate/batch - Batch calculation")
    logger.info("  GET /api/standards/<type> - WHO / EPA standard tables")
    logger.info("  GET /api/indices-info - Index information")
    logger.info("  POST /api/upload/csv - CSV sample upload")
    logger.info("  POST /api/export/csv - CSV export of results")
    logger.info("  GET /health - Health check")

    app.run(host=host, port=port, debug=debug, threaded=True)
