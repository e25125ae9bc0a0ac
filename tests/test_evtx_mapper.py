import sys
import os
import json
import shutil
import tempfile
import unittest
from datetime import datetime, timezone
# Add src to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '../src')))

from detection.errors import RecordDecodeError
from detection.models import EPOCH
from mappers.evtx_mapper import EvtxMapper, RecordReader, parse_timestamp

EVTX_EVENT = {
    "Event": {
        "#attributes": {"xmlns": "http://schemas.microsoft.com/win/2004/08/events/event"},
        "System": {
            "Provider": {"#attributes": {"Name": "Microsoft-Windows-Security-Auditing"}},
            "EventID": 4625,
            "TimeCreated": {"#attributes": {"SystemTime": "2024-03-01T12:00:05.1234567Z"}},
            "EventRecordID": 10512,
            "Channel": "Security",
            "Computer": "DC01.corp.local",
        },
        "EventData": {
            "TargetUserName": "administrator",
            "WorkstationName": "WS01",
            "IpAddress": "10.0.0.5",
            "LogonType": 3,
        },
    }
}


class TestParseTimestamp(unittest.TestCase):
    def test_iso_with_seven_digit_fraction(self):
        self.assertEqual(
            parse_timestamp("2024-03-01T12:00:05.1234567Z"),
            datetime(2024, 3, 1, 12, 0, 5, 123456, tzinfo=timezone.utc),
        )

    def test_naive_is_utc(self):
        self.assertEqual(parse_timestamp("2024-03-01 12:00:05"),
                         datetime(2024, 3, 1, 12, 0, 5, tzinfo=timezone.utc))

    def test_epoch_units(self):
        expected = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
        seconds = int(expected.timestamp())
        self.assertEqual(parse_timestamp(seconds), expected)
        self.assertEqual(parse_timestamp(seconds * 1000), expected)
        self.assertEqual(parse_timestamp(seconds * 1000000000), expected)

    def test_unparseable(self):
        self.assertIsNone(parse_timestamp("yesterday"))
        self.assertIsNone(parse_timestamp(None))


class TestEvtxMapper(unittest.TestCase):
    def setUp(self):
        self.mapper = EvtxMapper()

    def test_flattens_system_and_event_data(self):
        record = self.mapper.map_record(EVTX_EVENT, sequence=7)
        self.assertEqual(record.get('EventID'), 4625)
        self.assertEqual(record.get('TargetUserName'), 'administrator')
        self.assertEqual(record.get('WorkstationName'), 'WS01')
        self.assertEqual(record.get('Provider_Name'), 'Microsoft-Windows-Security-Auditing')
        self.assertEqual(record.sequence, 7)
        self.assertEqual(record.timestamp, datetime(2024, 3, 1, 12, 0, 5, 123456, tzinfo=timezone.utc))

    def test_source_descriptor(self):
        source = self.mapper.map_record(EVTX_EVENT).source
        self.assertEqual(source.product, 'windows')
        self.assertEqual(source.service, 'security')
        self.assertEqual(source.host, 'DC01.corp.local')
        self.assertEqual(source.channel, 'Security')

    def test_text_wrapped_values(self):
        event = {"Event": {"System": {"EventID": {"#text": 4104, "#attributes": {"Qualifiers": ""}},
                                      "Channel": "Microsoft-Windows-PowerShell/Operational"},
                           "EventData": {"ScriptBlockText": "Invoke-Mimikatz"}}}
        record = self.mapper.map_record(event)
        self.assertEqual(record.get('EventID'), 4104)
        self.assertEqual(record.source.service, 'powershell')

    def test_user_data_is_flattened(self):
        event = {"Event": {"System": {"EventID": 1102, "Channel": "Security"},
                           "UserData": {"LogFileCleared": {"SubjectUserName": "admin"}}}}
        self.assertEqual(self.mapper.map_record(event).get('SubjectUserName'), 'admin')

    def test_flat_document_passes_through(self):
        record = self.mapper.map_record({"EventID": 4720, "Channel": "Security",
                                         "timestamp": "2024-03-01T00:00:00Z"})
        self.assertEqual(record.get('EventID'), 4720)
        self.assertEqual(record.source.service, 'security')
        self.assertEqual(record.timestamp, datetime(2024, 3, 1, tzinfo=timezone.utc))

    def test_missing_timestamp_uses_epoch(self):
        self.assertEqual(self.mapper.map_record({"EventID": 1}).timestamp, EPOCH)

    def test_aliases_and_channel_overrides(self):
        mapper = EvtxMapper({
            'aliases': {'User': ['TargetUserName', 'SubjectUserName']},
            'channels': {'ForwardedEvents': 'forwarded'},
            'product': 'Windows',
        })
        record = mapper.map_record({"SubjectUserName": "bob", "TargetUserName": " ", "Channel": "ForwardedEvents"})
        self.assertEqual(record.get('User'), 'bob')
        self.assertEqual(record.source.service, 'forwarded')
        self.assertEqual(record.source.product, 'windows')

    def test_invalid_documents(self):
        for raw in ([1, 2], "text", {}):
            with self.assertRaises(RecordDecodeError):
                self.mapper.map_record(raw)

    def test_record_is_read_only(self):
        record = self.mapper.map_record(EVTX_EVENT)
        with self.assertRaises(TypeError):
            record.fields['EventID'] = 1


class TestRecordReader(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.tmpdir)

    def test_bad_lines_are_skipped(self):
        reader = RecordReader()
        lines = [json.dumps(EVTX_EVENT), '{not json', '', json.dumps([1]), json.dumps({"EventID": 4720})]
        records = list(reader.iter_lines(lines))
        self.assertEqual([r.get('EventID') for r in records], [4625, 4720])
        self.assertEqual([r.sequence for r in records], [0, 1])
        self.assertEqual(reader.records_read, 2)
        self.assertEqual(reader.records_skipped, 2)

    def test_reads_directories(self):
        nested = os.path.join(self.tmpdir, 'host1')
        os.makedirs(nested)
        with open(os.path.join(nested, 'security.jsonl'), 'w', encoding='utf-8') as f:
            f.write(json.dumps(EVTX_EVENT) + '\n')
            f.write(json.dumps({"EventID": 4720}) + '\n')
        with open(os.path.join(self.tmpdir, 'notes.txt'), 'w', encoding='utf-8') as f:
            f.write('ignored\n')

        reader = RecordReader()
        records = list(reader.iter_records([self.tmpdir, os.path.join(self.tmpdir, 'missing.jsonl')]))
        self.assertEqual(len(records), 2)
        self.assertEqual(reader.records_read, 2)


if __name__ == '__main__':
    unittest.main()
