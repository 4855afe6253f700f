"""
Pytest tests for background decoding
"""

import io
import threading

import pytest

from pcxdecoder import (
    DecodeTask,
    TruncatedDataError,
    decode_background,
    decode_foreground,
    read_header,
)
from pcx_bytes import encode_rows, make_header, vga_palette

ROWS = [[[y, y + 1, y + 2], [0, 0, 0], [9, 9, 9]] for y in range(0, 60, 3)]


def stream(data):
    fp = io.BytesIO(data)
    return read_header(fp), fp


def drain(task):
    messages = []
    while True:
        message = task.messages.get(timeout=5)
        messages.append(message)
        if message.finished:
            return messages


def test_background_matches_foreground():
    data = make_header(width=3, height=len(ROWS), n_planes=3) + encode_rows(ROWS)

    task = decode_background(*stream(data))
    image = task.result(timeout=5)

    expected = decode_foreground(*stream(data))
    assert task.done
    assert (image.pixels == expected.pixels).all()


def test_messages_end_with_image():
    data = make_header(width=3, height=len(ROWS), n_planes=3) + encode_rows(ROWS)

    task = decode_background(*stream(data))
    messages = drain(task)

    percents = [m.percent for m in messages]
    assert percents == sorted(percents)
    assert percents[-1] == 100
    assert messages[-1].image is task.result(timeout=5)
    assert not messages[-1].image.pixels.flags.writeable
    assert task.messages.empty()


def test_callback_runs_on_worker_thread():
    seen = []
    data = make_header(width=3, height=len(ROWS), n_planes=3) + encode_rows(ROWS)

    task = decode_background(*stream(data),
                             on_progress=lambda m: seen.append((threading.current_thread().name, m)))
    task.result(timeout=5)

    assert {name for name, _ in seen} == {"pcx-decode"}
    assert seen[-1][1].image is not None
    assert len(seen) == len(ROWS) + 1


def test_failure_delivers_terminal_message():
    data = make_header(width=3, height=len(ROWS), n_planes=3) + encode_rows(ROWS)

    task = decode_background(*stream(data[:200]))
    messages = drain(task)

    assert isinstance(messages[-1].error, TruncatedDataError)
    assert messages[-1].image is None
    assert all(m.image is None for m in messages)
    with pytest.raises(TruncatedDataError):
        task.result(timeout=5)
    assert task.done


def test_palette_available_after_indexed_decode():
    colors = [(i, 0, 255 - i) for i in range(256)]
    data = (make_header(width=2, height=2, n_planes=1)
            + encode_rows([[[0, 1]], [[2, 3]]]) + vga_palette(colors))

    task = decode_background(*stream(data))
    image = task.result(timeout=5)

    assert task.palette == colors
    assert image[1, 1] == (3, 0, 252, 255)


def test_task_is_not_started_until_asked():
    data = make_header(width=3, height=len(ROWS), n_planes=3) + encode_rows(ROWS)

    task = DecodeTask(*stream(data))
    assert not task.done
    assert task.messages.empty()

    task.start()
    assert task.result(timeout=5).height == len(ROWS)


def test_callback_error_after_completion_keeps_image():
    def on_progress(message):
        if message.image is not None:
            raise ValueError("listener broke")

    data = make_header(width=3, height=len(ROWS), n_planes=3) + encode_rows(ROWS)

    task = decode_background(*stream(data), on_progress=on_progress)
    image = task.result(timeout=5)

    messages = drain(task)
    assert messages[-1].image is image
    assert task.messages.empty()
    assert task.done


def test_callback_error_during_decode_is_terminal():
    def on_progress(message):
        if message.percent >= 50:
            raise ValueError("listener broke")

    data = make_header(width=3, height=len(ROWS), n_planes=3) + encode_rows(ROWS)

    task = decode_background(*stream(data), on_progress=on_progress)
    with pytest.raises(ValueError, match="listener broke"):
        task.result(timeout=5)

    messages = drain(task)
    assert isinstance(messages[-1].error, ValueError)
    assert all(m.image is None for m in messages)
    assert task.messages.empty()
