"""
Tests for the row codec (docmapper/db/codec.py).
"""

import datetime

from docmapper.db import codec
from docmapper.models import Geometry, Point


class TestCodec:

    def test_tags(self):
        moment = datetime.datetime(2020, 1, 1, tzinfo=datetime.timezone.utc)
        assert codec.encode(moment) == {"$type": "TIME", "iso": "2020-01-01T00:00:00+00:00"}
        assert codec.encode(Point(longitude=1, latitude=2)) == {"$type": "GEOMETRY", "point": [1, 2]}
        assert codec.encode(b"hi") == {"$type": "BINARY", "data": "aGk="}

    def test_geometry(self):
        shape = Geometry({"type": "LineString", "coordinates": [[0, 0], [1, 1]]})
        text = codec.dumps({"shape": shape})
        restored = codec.loads(text)["shape"]
        assert isinstance(restored, Geometry)
        assert restored.type == "LineString"
        assert restored.to_geojson() == shape.geojson

    def test_nested_values(self):
        moment = datetime.datetime(2020, 5, 6, 7, 8, 9, tzinfo=datetime.timezone.utc)
        row = {"id": 1, "log": [{"at": moment, "raw": bytearray(b"x")}]}
        assert codec.loads(codec.dumps(row)) == {"id": 1, "log": [{"at": moment, "raw": b"x"}]}

    def test_decode_matches_loads(self):
        encoded = codec.encode({"p": Point(longitude=3, latitude=4), "n": [1, None]})
        assert codec.decode(encoded) == {"p": Point(longitude=3, latitude=4), "n": [1, None]}

    def test_untagged_objects_pass_through(self):
        assert codec.loads('{"$type": "UNKNOWN", "x": 1}') == {"$type": "UNKNOWN", "x": 1}

    def test_key_encoding_is_stable(self):
        assert codec.encode_key("a") == '"a"'
        assert codec.encode_key(1) == "1"
        assert codec.encode_key({"b": 1, "a": 2}) == codec.encode_key({"a": 2, "b": 1})
