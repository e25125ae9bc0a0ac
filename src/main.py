import sys
import json
import yaml
import os
import re
import logging
from typing import Dict, Any, Iterable, Optional, TextIO

from mappers.evtx_mapper import EvtxMapper, RecordReader
from detection.engine import DetectionEngine, EngineConfig
from detection.errors import ConfigurationError
from detection.matchers import MatchPolicy
from detection.models import Detection
from detection.pivot import PivotKeywords
from detection.ruleset import RuleSet, RuleSetOptions
from alerts.alert_manager import AlertManager

def setup_logging(config: Dict[str, Any]):
    """Configure logging based on config."""
    log_config = config.get('logging', {})
    log_level = getattr(logging, str(log_config.get('level', 'INFO')).upper())
    log_file = log_config.get('file')

    # stdout may carry detections, so log to stderr
    handlers = [logging.StreamHandler(sys.stderr)]

    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir and not os.path.exists(log_dir):
            os.makedirs(log_dir, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers,
        force=True
    )

    logging.getLogger('urllib3').setLevel(logging.WARNING)

def load_config(path: str) -> Dict[str, Any]:
    """Load YAML configuration file with environment variable expansion."""
    with open(path, 'r') as f:
        content = f.read()

    # Expand environment variables (${VAR_NAME} format)
    def expand_env_var(match):
        var_name = match.group(1)
        return os.environ.get(var_name, '')

    content = re.sub(r'\$\{([^}]+)\}', expand_env_var, content)

    return yaml.safe_load(content) or {}

def build_ruleset(config: Dict[str, Any]) -> RuleSet:
    policy = MatchPolicy(case_insensitive=bool(config.get('matching', {}).get('case_insensitive', True)))
    rules_config = config.get('rules', {})
    options = RuleSetOptions.from_config(rules_config, policy=policy)
    paths = rules_config.get('paths') or ['rules']
    return RuleSet.from_paths(paths, options)

def build_pivot(config: Dict[str, Any]) -> Optional[PivotKeywords]:
    pivot_config = config.get('pivot', {})
    if not pivot_config.get('enabled'):
        return None
    return PivotKeywords.load(pivot_config.get('keywords_file') or 'config/pivot_keywords.txt')

def write_pivot(pivot: PivotKeywords, config: Dict[str, Any], out: TextIO) -> None:
    """Pivot keywords go to <output>-<Category>.txt files, or to `out` when output is '-'."""
    prefix = config.get('pivot', {}).get('output', '-')
    if prefix in (None, '', '-'):
        out.write(pivot.render())
        return
    paths = pivot.write(prefix)
    out.write("Pivot keyword results saved to the following files:\n" + "".join(f"{p}\n" for p in paths))

def write_detections(detections: Iterable[Detection], out: TextIO) -> int:
    written = 0
    for detection in detections:
        out.write(json.dumps(detection.to_dict(), default=str) + '\n')
        written += 1
    return written

def run(config: Dict[str, Any]) -> int:
    logger = logging.getLogger(__name__)

    ruleset = build_ruleset(config)
    ruleset.require_rules()

    alerter = None
    alerting = config.get('alerting', {})
    if alerting.get('enabled') and alerting.get('webhook_url'):
        alerter = AlertManager(alerting)

    pivot = build_pivot(config)
    engine = DetectionEngine(
        ruleset,
        EngineConfig.from_config(config.get('engine', {}), config.get('aggregation', {})),
        pivot=pivot,
    )
    reader = RecordReader(EvtxMapper(config.get('mappings', {})))
    input_paths = [p for p in (config.get('input', {}).get('paths') or []) if p]
    if not input_paths:
        raise ConfigurationError("No input paths configured (input.paths)")

    result = engine.scan(reader.iter_records(input_paths))

    output = config.get('output', {}).get('file', '-')
    if output in (None, '', '-'):
        written = write_detections(result.detections, sys.stdout)
    else:
        out_dir = os.path.dirname(output)
        if out_dir and not os.path.exists(out_dir):
            os.makedirs(out_dir, exist_ok=True)
        with open(output, 'w', encoding='utf-8') as f:
            written = write_detections(result.detections, f)
    logger.info(f"Wrote {written} detections")

    if config.get('output', {}).get('statistics'):
        sys.stdout.write(result.event_id_report())
    if pivot is not None:
        write_pivot(pivot, config, sys.stdout)
        logger.info(f"Pivot keywords: {pivot.get_stats()}")

    if alerter is not None:
        alerter.send_all(result.detections)
        logger.info(f"Alert Manager: {alerter.get_stats()}")

    logger.info("=" * 60)
    logger.info("Scan Statistics:")
    logger.info(f"Rules: {ruleset.get_stats()}")
    logger.info(f"Records: read={reader.records_read} skipped={reader.records_skipped}")
    logger.info(f"Detections: {result.get_stats()}")
    logger.info("=" * 60)

    return 130 if result.cancelled else 0

def main() -> int:
    config_path = os.environ.get('CONFIG_PATH', 'config/config.yaml')

    if not os.path.exists(config_path):
        print(f"Error: Config file not found at {config_path}", file=sys.stderr)
        return 1

    config = load_config(config_path)

    setup_logging(config)
    logger = logging.getLogger(__name__)

    logger.info("=" * 60)
    logger.info("Starting event log scan")
    logger.info("=" * 60)

    try:
        return run(config)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 2

if __name__ == '__main__':
    sys.exit(main())
