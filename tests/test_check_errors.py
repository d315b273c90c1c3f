from __future__ import annotations

from nodeguard.app.services.check_errors import KIND_DUPLICATE_TAG, KIND_OUTBOUND_INDEX, CheckErrorParser


def test_outbound_index_with_field():
    out = CheckErrorParser().parse(
        "FATAL[0000] decode config at probe.json: outbounds[5].transport: unknown transport type: xhttp"
    )
    assert len(out) == 1
    ex = out[0]
    assert ex.kind == KIND_OUTBOUND_INDEX
    assert ex.index == 5
    assert ex.field == "transport"
    assert ex.message == "unknown transport type: xhttp"


def test_singular_outbound_without_field():
    (ex,) = CheckErrorParser().parse("initialize outbound[3]: missing password")
    assert ex.index == 3
    assert ex.field == ""
    assert ex.message == "missing password"


def test_duplicate_tag():
    (ex,) = CheckErrorParser().parse("FATAL[0000] duplicate outbound/endpoint tag: probe_7")
    assert ex.kind == KIND_DUPLICATE_TAG
    assert ex.tag == "probe_7"


def test_multiple_lines_are_deduplicated_in_order():
    text = "\n".join(
        [
            "outbounds[4].method: unknown method",
            "",
            "some unrelated noise",
            "outbounds[2].uuid: invalid uuid",
            "outbounds[4].method: unknown method",
        ]
    )
    out = CheckErrorParser().parse(text)
    assert [e.index for e in out] == [4, 2]


def test_unrecognized_output_yields_nothing():
    assert CheckErrorParser().parse("FATAL[0000] open probe.json: permission denied") == []
    assert CheckErrorParser().parse("") == []
