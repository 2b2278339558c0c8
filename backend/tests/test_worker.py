import threading

from photo_analysis.worker import LocalPoller


def test_poller_ticks_until_stopped():
    ticked = threading.Event()
    calls = []

    def tick():
        calls.append(1)
        ticked.set()

    poller = LocalPoller(tick, interval=0.01)
    poller.start()
    assert poller.running
    assert ticked.wait(2)
    poller.stop()
    assert not poller.running
    assert calls


def test_poller_survives_failing_tick():
    ticks = []
    second = threading.Event()

    def tick():
        ticks.append(1)
        if len(ticks) >= 2:
            second.set()
        raise RuntimeError("db locked")

    poller = LocalPoller(tick, interval=0.01)
    poller.start()
    assert second.wait(2)
    poller.stop()


def test_start_twice_keeps_one_thread():
    poller = LocalPoller(lambda: None, interval=10)
    poller.start()
    thread = poller._thread
    poller.start()
    assert poller._thread is thread
    poller.stop()
