import json

from chat_core.streaming.decoder import decode_body, decode_line, iter_chunks


def _raws(chunks):
    return [c.raw for c in chunks]


def test_split_mid_line_yields_two_chunks():
    reads = [b'{"text":"Hel"}\n{"tex', b't":"lo"}\n']
    chunks = list(iter_chunks(reads))
    assert len(chunks) == 2
    assert chunks[0].raw == {"text": "Hel"}
    assert chunks[1].raw == {"text": "lo"}
    assert [c.text for c in chunks] == ["Hel", "lo"]


def test_split_invariance_at_every_boundary():
    body = (
        '{"text":"你好"}\n'
        "plain text line\n"
        '{"text":"x","candidates":[{"groundingMetadata":{"groundingChunks":[{"web":{"uri":"a"}}]}}]}\n'
        "\n"
        '{"text":"tail"}'
    ).encode("utf-8")
    expected = _raws(iter_chunks([body]))
    assert len(expected) == 4
    for i in range(len(body) + 1):
        assert _raws(iter_chunks([body[:i], body[i:]])) == expected
    for i in range(1, len(body)):
        for j in range(i, len(body)):
            assert _raws(iter_chunks([body[:i], body[i:j], body[j:]])) == expected


def test_byte_at_a_time_matches_unsplit():
    body = '{"text":"Grüße"}\nне JSON\n'.encode("utf-8")
    one_by_one = [body[i:i + 1] for i in range(len(body))]
    assert _raws(iter_chunks(one_by_one)) == _raws(iter_chunks([body]))
    assert _raws(iter_chunks(one_by_one)) == [{"text": "Grüße"}, {"text": "не JSON"}]


def test_malformed_line_degrades_to_text():
    chunks = list(iter_chunks([b'{"text": broken\n']))
    assert chunks[0].raw == {"text": '{"text": broken'}
    assert chunks[0].text == '{"text": broken'


def test_remaining_buffer_is_flushed():
    chunks = list(iter_chunks([b'{"text":"a"}\n{"text":"b"}']))
    assert [c.text for c in chunks] == ["a", "b"]

    chunks = list(iter_chunks([b"no newline at end"]))
    assert [c.text for c in chunks] == ["no newline at end"]


def test_blank_lines_and_crlf_are_skipped():
    chunks = list(iter_chunks([b'\r\n{"text":"a"}\r\n\r\n   \n']))
    assert [c.raw for c in chunks] == [{"text": "a"}]


def test_json_object_is_yielded_verbatim():
    payload = {"text": "hi", "candidates": [{"content": {"parts": [{"text": "hi"}]}}], "usage": 3}
    chunks = list(iter_chunks([json.dumps(payload).encode() + b"\n"]))
    assert chunks[0].raw == payload
    assert chunks[0].candidates == payload["candidates"]


def test_non_object_json_keeps_raw_without_text():
    chunk = decode_line("42")
    assert chunk.raw == 42
    assert chunk.text is None
    assert decode_line("   ") is None


def test_decoder_is_lazy():
    consumed = []

    def reads():
        for piece in (b'{"text":"1"}\n', b'{"text":"2"}\n'):
            consumed.append(piece)
            yield piece

    it = iter_chunks(reads())
    assert consumed == []
    assert next(it).text == "1"
    assert len(consumed) == 1


def test_grounding_sources_extracted_from_candidates():
    line = json.dumps({
        "text": "x",
        "candidates": [{"groundingMetadata": {"groundingChunks": [
            {"web": {"uri": "https://a", "title": "A"}},
            {"web": {"uri": ""}},
            {"web": {"uri": "https://b"}},
            {"retrievedContext": {}},
        ]}}],
    })
    sources = decode_line(line).grounding_sources()
    assert [(s.uri, s.title) for s in sources] == [("https://a", "A"), ("https://b", "")]


def test_decode_body_keeps_whole_object():
    body = {"text": "full answer", "candidates": [{"groundingMetadata": {"groundingChunks": [{"web": {"uri": "https://a"}}]}}]}
    chunks = list(decode_body(json.dumps(body).encode("utf-8")))
    assert len(chunks) == 1
    assert chunks[0].raw == body
    assert chunks[0].text == "full answer"
    assert [s.uri for s in chunks[0].grounding_sources()] == ["https://a"]


def test_decode_body_without_text():
    chunks = list(decode_body(b'{"raw": {}}'))
    assert [c.text for c in chunks] == [None]
    assert list(decode_body(b"")) == []
    assert list(decode_body(b"  \n")) == []


def test_decode_body_falls_back_to_line_policy():
    chunks = list(decode_body(b'{"text":"a"}\n{"text":"b"}\n'))
    assert [c.text for c in chunks] == ["a", "b"]
