
import orjson


def canonical_bytes(d: dict) -> bytes:
    # sorted keys, no whitespace; same structure always yields the same bytes
    return orjson.dumps(d, option=orjson.OPT_SORT_KEYS)


def loads(raw: bytes | str) -> dict:
    return orjson.loads(raw)
