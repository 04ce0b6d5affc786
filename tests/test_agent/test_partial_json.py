import json

import pytest

from recall_chat.partial_json import ResponseFieldStreamer, parse_reply

SAMPLES = [
    {"memoriesReferenced": [], "response": "Hello there!"},
    {"memoriesReferenced": ["m1", "m2"], "response": 'She said "hi"\nthen left\\ \t done/'},
    {"response": "Fractions ½ and emoji \U0001F600 in 7th grade", "memoriesReferenced": ["a"]},
    {"memoriesReferenced": [], "response": "control \u0001 and   separators"},
    {"memoriesReferenced": [], "response": ""},
]


def _documents() -> list[str]:
    docs = []
    for sample in SAMPLES:
        docs.append(json.dumps(sample))
        docs.append(json.dumps(sample, ensure_ascii=False))
        docs.append(json.dumps(sample, indent=2))
    return docs


def _stream(chunks: list[str]) -> str:
    streamer = ResponseFieldStreamer()
    return "".join(streamer.feed(chunk) for chunk in chunks)


@pytest.mark.parametrize("document", _documents())
def test_every_two_way_split_decodes_the_full_response(document):
    expected = json.loads(document)["response"]
    for cut in range(len(document) + 1):
        assert _stream([document[:cut], document[cut:]]) == expected, cut


@pytest.mark.parametrize("document", _documents())
def test_character_by_character_decodes_the_full_response(document):
    expected = json.loads(document)["response"]
    assert _stream(list(document)) == expected


def test_every_three_way_split_of_escapes_and_surrogates():
    document = json.dumps({"response": 'a\\"\n\U0001F600éz', "memoriesReferenced": []})
    expected = json.loads(document)["response"]
    for first in range(len(document) + 1):
        for second in range(first, len(document) + 1):
            chunks = [document[:first], document[first:second], document[second:]]
            assert _stream(chunks) == expected, (first, second)


def test_lone_high_surrogate_matches_json_loads():
    document = '{"response": "x\\ud83dA", "memoriesReferenced": []}'
    expected = json.loads(document)["response"]
    for cut in range(len(document) + 1):
        assert _stream([document[:cut], document[cut:]]) == expected


def test_stops_at_closing_quote_and_ignores_later_text():
    streamer = ResponseFieldStreamer()

    assert streamer.feed('{"response": "done"') == "done"
    assert streamer.done
    assert streamer.feed(', "response": "again"}') == ""
    assert streamer.text == "done"


def test_nothing_is_emitted_before_the_field_opens():
    streamer = ResponseFieldStreamer()

    assert streamer.feed('{"memoriesReferenced": ["m1"], "resp') == ""
    assert not streamer.started
    assert streamer.feed('onse" : "Hi') == "Hi"
    assert streamer.started
    assert not streamer.done


def test_other_field_names_can_be_streamed():
    streamer = ResponseFieldStreamer("title")

    assert streamer.feed('{"title": "Fractions"}') == "Fractions"


def test_parse_reply_reads_response_and_citations():
    parsed = parse_reply('{"response": "Hi Dana", "memoriesReferenced": ["m1", 7, "m2"]}')

    assert parsed.structured
    assert parsed.response == "Hi Dana"
    assert parsed.memory_ids == ["m1", "m2"]


@pytest.mark.parametrize(
    "raw",
    [
        'Sure! {"response": "unterminated',
        '["response", "list"]',
        '{"response": 42, "memoriesReferenced": []}',
        '{"memoriesReferenced": ["m1"]}',
    ],
)
def test_parse_reply_falls_back_to_raw_text(raw):
    parsed = parse_reply(raw)

    assert not parsed.structured
    assert parsed.response == raw
    assert parsed.memory_ids == []


def test_parse_reply_ignores_malformed_citation_list():
    parsed = parse_reply('{"response": "ok", "memoriesReferenced": "m1"}')

    assert parsed.structured
    assert parsed.memory_ids == []
