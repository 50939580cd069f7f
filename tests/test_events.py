from map_manager.core.events import EventBus, ManagerEvent


def test_failing_listener_does_not_stop_others() -> None:
    bus = EventBus()
    received: list = []

    def broken(payload):
        raise RuntimeError("boom")

    bus.subscribe(ManagerEvent.ERROR_MESSAGE, broken)
    bus.subscribe(ManagerEvent.ERROR_MESSAGE, received.append)
    bus.emit(ManagerEvent.ERROR_MESSAGE, "disk full")

    assert received == ["disk full"]


def test_unsubscribe() -> None:
    bus = EventBus()
    received: list = []
    unsubscribe = bus.subscribe(ManagerEvent.DOWNLOADING_CHANGED, received.append)

    bus.emit(ManagerEvent.DOWNLOADING_CHANGED, True)
    unsubscribe()
    unsubscribe()
    bus.emit(ManagerEvent.DOWNLOADING_CHANGED, False)

    assert received == [True]
