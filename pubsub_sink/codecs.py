import json


class BytesCodec:
    """Publishes bytes-like elements as they are."""

    name = "bytes"

    def encode(self, element):
        if not isinstance(element, (bytes, bytearray, memoryview)):
            raise TypeError(f"bytes codec cannot encode {type(element).__name__}")
        return bytes(element)

    def decode(self, data):
        return bytes(data)


class Utf8Codec:
    name = "utf8"

    def encode(self, element):
        if not isinstance(element, str):
            raise TypeError(f"utf8 codec cannot encode {type(element).__name__}")
        return element.encode('utf-8')

    def decode(self, data):
        return bytes(data).decode('utf-8')


class JsonCodec:
    """Compact JSON with sorted keys, so equal documents encode to equal bytes."""

    name = "json"

    def encode(self, element):
        return json.dumps(element, separators=(',', ':'), sort_keys=True).encode('utf-8')

    def decode(self, data):
        return json.loads(bytes(data).decode('utf-8'))


CODECS = {codec.name: codec for codec in (BytesCodec, Utf8Codec, JsonCodec)}


def get_codec(name):
    try:
        return CODECS[name.lower()]()
    except KeyError:
        raise ValueError(f"Unknown element codec '{name}'. Choose one of {sorted(CODECS)}.")
