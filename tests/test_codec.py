import json
import unittest

from artifact_cache.codec import decode_record, encode_record
from artifact_cache.errors import RecordDecodeError
from artifact_cache.models import CacheRecord


def _record() -> CacheRecord:
    return CacheRecord(
        metadata={
            "key": "foo.txt",
            "sourcePaths": ["/src/foo.txt", "/src/bar.txt"],
            "minimumMtime": 1700000000000,
            "compileTime": 12,
        },
        payloads={
            "transpiledOutput": b"line one\nline two\n",
            "sourceMap": bytes(range(256)),
        },
    )


class EncodeRecordTests(unittest.TestCase):
    def test_metadata_line_holds_offset_table(self) -> None:
        data = encode_record(_record())

        header, _, blob = data.partition(b"\n")
        metadata = json.loads(header.decode("utf-8"))

        self.assertEqual(metadata["key"], "foo.txt")
        self.assertEqual(
            metadata["payloads"],
            {
                "transpiledOutput": {"name": "transpiledOutput", "start": 0, "end": 18},
                "sourceMap": {"name": "sourceMap", "start": 18, "end": 18 + 256},
            },
        )
        self.assertEqual(blob, b"line one\nline two\n" + bytes(range(256)))

    def test_newlines_inside_metadata_values_stay_escaped(self) -> None:
        record = CacheRecord(
            metadata={"sourcePaths": [], "note": "first\nsecond", "nested": {"text": "a\nb"}},
            payloads={"out": b"\n\n"},
        )

        data = encode_record(record)

        self.assertEqual(data.index(b"\n"), len(data) - 3)

    def test_text_payloads_are_encoded_as_utf8(self) -> None:
        record = CacheRecord(metadata={"sourcePaths": []}, payloads={"out": "héllo"})  # type: ignore[dict-item]

        decoded = decode_record(encode_record(record))

        self.assertEqual(decoded.payloads["out"], "héllo".encode("utf-8"))

    def test_does_not_mutate_the_record(self) -> None:
        record = _record()

        encode_record(record)

        self.assertNotIn("payloads", record.metadata)


class DecodeRecordTests(unittest.TestCase):
    def test_round_trip_preserves_metadata_and_payload_bytes(self) -> None:
        record = _record()

        decoded = decode_record(encode_record(record))

        self.assertEqual(decoded.key, "foo.txt")
        self.assertEqual(decoded.minimum_mtime, 1700000000000)
        self.assertEqual(decoded.source_paths, ["/src/foo.txt", "/src/bar.txt"])
        self.assertEqual(decoded.metadata["compileTime"], 12)
        self.assertEqual(decoded.payloads, record.payloads)
        self.assertEqual(list(decoded.payloads), ["transpiledOutput", "sourceMap"])
        self.assertNotIn("payloads", decoded.metadata)

    def test_round_trip_without_payloads(self) -> None:
        record = CacheRecord(metadata={"sourcePaths": ["/a"], "key": "k"})

        decoded = decode_record(encode_record(record))

        self.assertEqual(decoded.payloads, {})
        self.assertEqual(decoded.metadata, {"sourcePaths": ["/a"], "key": "k"})

    def test_rejects_buffer_without_delimiter(self) -> None:
        with self.assertRaises(RecordDecodeError):
            decode_record(b'{"sourcePaths": []}')

    def test_rejects_invalid_json(self) -> None:
        with self.assertRaises(RecordDecodeError):
            decode_record(b"{not json\npayload")

    def test_rejects_non_object_metadata(self) -> None:
        with self.assertRaises(RecordDecodeError):
            decode_record(b"[1, 2]\n")

    def test_rejects_truncated_payload_blob(self) -> None:
        data = encode_record(_record())

        with self.assertRaises(RecordDecodeError):
            decode_record(data[:-10])

    def test_rejects_offsets_without_integers(self) -> None:
        header = json.dumps({"payloads": {"out": {"name": "out", "start": "0", "end": 3}}})

        with self.assertRaises(RecordDecodeError):
            decode_record(header.encode("utf-8") + b"\nabc")


if __name__ == "__main__":
    unittest.main()
