import logging

from logger import ParticipantFilter


def make_record():
    return logging.LogRecord("tablemesh", logging.INFO, __file__, 1, "hello", None, None)


def test_records_are_tagged_with_participant():
    participant_filter = ParticipantFilter()
    record = make_record()
    assert participant_filter.filter(record)
    assert record.participant == "-"

    participant_filter.participant_id = "tablemesh-ABCDE"
    record = make_record()
    participant_filter.filter(record)
    assert record.participant == "tablemesh-ABCDE"
