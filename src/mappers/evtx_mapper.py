import json
import logging
import os
import re
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Iterator, Optional

from detection.errors import RecordDecodeError
from detection.matchers import get_field_value
from detection.models import EPOCH, Record, SourceDescriptor

logger = logging.getLogger(__name__)

# Event log channel -> logsource service.
DEFAULT_CHANNEL_SERVICES = {
    "security": "security",
    "system": "system",
    "application": "application",
    "microsoft-windows-sysmon/operational": "sysmon",
    "microsoft-windows-powershell/operational": "powershell",
    "windows powershell": "powershell",
    "microsoft-windows-taskscheduler/operational": "taskscheduler",
    "microsoft-windows-windows defender/operational": "windefend",
    "microsoft-windows-wmi-activity/operational": "wmi",
    "microsoft-windows-bits-client/operational": "bits-client",
    "microsoft-windows-terminalservices-localsessionmanager/operational": "terminalservices-localsessionmanager",
}

RECORD_EXTENSIONS = (".json", ".jsonl")

_FRACTION_RE = re.compile(r"(\.\d{6})\d+")


def _text(value: Any) -> Any:
    """evtx JSON wraps attributed values as {"#text": ..., "#attributes": {...}}."""
    if isinstance(value, dict) and "#text" in value:
        return value["#text"]
    return value


def parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        # nanoseconds, milliseconds or seconds since the epoch
        number = float(value)
        if number > 1e17:
            number /= 1e9
        elif number > 1e11:
            number /= 1e3
        return datetime.fromtimestamp(number, tz=timezone.utc)
    text = str(value).strip().replace(" ", "T", 1)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    text = _FRACTION_RE.sub(r"\1", text)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class EvtxMapper:
    """
    Turns one decoded Windows event (as emitted by evtx_dump in JSON mode)
    into a flat Record. System fields and EventData/UserData fields land at
    the top level so rules can address `EventID`, `TargetUserName`, etc.
    directly. Already-flat documents pass through unchanged.
    """

    def __init__(self, mappings: Optional[Dict[str, Any]] = None):
        mappings = mappings or {}
        self.aliases: Dict[str, Any] = dict(mappings.get("aliases") or {})
        self.channel_services = dict(DEFAULT_CHANNEL_SERVICES)
        for channel, service in (mappings.get("channels") or {}).items():
            self.channel_services[str(channel).lower()] = str(service).lower()
        self.product = str(mappings.get("product") or "windows").lower()

    def flatten(self, raw: Dict[str, Any]) -> Dict[str, Any]:
        event = raw.get("Event") if isinstance(raw.get("Event"), dict) else None
        if event is None:
            return dict(raw)

        fields: Dict[str, Any] = {}
        system = event.get("System")
        if isinstance(system, dict):
            for key, value in system.items():
                fields[key] = _text(value)
            provider = system.get("Provider")
            if isinstance(provider, dict):
                name = get_field_value(provider, "#attributes.Name")
                if name is not None:
                    fields["Provider_Name"] = name
            time_created = system.get("TimeCreated")
            if isinstance(time_created, dict):
                fields["TimeCreated"] = get_field_value(time_created, "#attributes.SystemTime")

        for section in ("EventData", "UserData"):
            data = event.get(section)
            if not isinstance(data, dict):
                continue
            for key, value in data.items():
                if key == "#attributes":
                    continue
                if isinstance(value, dict) and "#text" not in value:
                    # UserData nests one element deeper
                    for inner_key, inner_value in value.items():
                        if inner_key != "#attributes":
                            fields.setdefault(inner_key, _text(inner_value))
                else:
                    fields.setdefault(key, _text(value))
        return fields

    def _apply_aliases(self, fields: Dict[str, Any]) -> None:
        for alias, path in self.aliases.items():
            paths = path if isinstance(path, (list, tuple)) else [path]
            for candidate in paths:
                value = get_field_value(fields, str(candidate))
                if isinstance(value, str) and not value.strip():
                    continue
                if value is not None:
                    fields[alias] = value
                    break

    def source_for(self, fields: Dict[str, Any]) -> SourceDescriptor:
        channel = fields.get("Channel")
        channel_text = str(channel).strip() if channel is not None else None
        service = self.channel_services.get(channel_text.lower()) if channel_text else None
        computer = fields.get("Computer")
        return SourceDescriptor(
            product=self.product,
            service=service,
            host=str(computer) if computer is not None else None,
            channel=channel_text,
        )

    def map_record(self, raw: Any, sequence: int = 0) -> Record:
        if not isinstance(raw, dict):
            raise RecordDecodeError(f"Expected a JSON object, got {type(raw).__name__}")
        fields = self.flatten(raw)
        if not fields:
            raise RecordDecodeError("Event has no fields")
        self._apply_aliases(fields)

        timestamp = parse_timestamp(fields.get("TimeCreated") or fields.get("timestamp") or fields.get("@timestamp"))
        if timestamp is None:
            logger.debug(f"Record #{sequence} has no parseable timestamp, using epoch")
            timestamp = EPOCH

        return Record(fields=fields, timestamp=timestamp, source=self.source_for(fields), sequence=sequence)


class RecordReader:
    """
    Streams Records from JSON-lines files. Lines that fail to decode are
    logged and skipped; they never stop the stream.
    """

    def __init__(self, mapper: Optional[EvtxMapper] = None):
        self.mapper = mapper or EvtxMapper()
        self.records_read = 0
        self.records_skipped = 0

    def iter_files(self, paths: Iterable[str]) -> Iterator[str]:
        for path in paths:
            if os.path.isdir(path):
                for dirpath, dirnames, filenames in os.walk(path):
                    dirnames[:] = sorted(dirnames)
                    for filename in sorted(filenames):
                        if filename.endswith(RECORD_EXTENSIONS) and not filename.startswith("."):
                            yield os.path.join(dirpath, filename)
            elif os.path.exists(path):
                yield path
            else:
                logger.warning(f"Input path does not exist: {path}")

    def iter_lines(self, lines: Iterable[str], origin: str = "<stream>") -> Iterator[Record]:
        for line_no, line in enumerate(lines, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                raw = json.loads(line)
                record = self.mapper.map_record(raw, sequence=self.records_read)
            except (json.JSONDecodeError, RecordDecodeError) as e:
                self.records_skipped += 1
                logger.warning(f"Skipping undecodable record {origin}:{line_no}: {e}")
                continue
            self.records_read += 1
            yield record

    def iter_records(self, paths: Iterable[str]) -> Iterator[Record]:
        for file_path in self.iter_files(paths):
            logger.info(f"Reading records from {file_path}")
            try:
                with open(file_path, "r", encoding="utf-8", errors="replace") as f:
                    yield from self.iter_lines(f, origin=file_path)
            except OSError as e:
                logger.error(f"Failed to read {file_path}: {e}")
