from __future__ import annotations

import pytest

from mdsm.core.crypto import CookieCodec, generate_cookie_key_bytes
from mdsm.core.endpoints import EndpointRegistry
from mdsm.core.manager import SessionManager
from mdsm.core.router import RequestRouter
from tests.helpers.fakes import FakeClock, HandlerSpy, ManualScheduler, RecordingEventLogger


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def scheduler(clock):
    return ManualScheduler(clock)


@pytest.fixture
def events():
    return RecordingEventLogger()


@pytest.fixture
def codec():
    return CookieCodec(generate_cookie_key_bytes())


@pytest.fixture
def handler_a():
    return HandlerSpy(reply={"ok": "a"})


@pytest.fixture
def handler_b():
    return HandlerSpy(reply={"ok": "b"})


@pytest.fixture
def registry(handler_a, handler_b):
    return EndpointRegistry(
        [
            {"url": "/api/doSomething1/", "allowed_class_types": ["class_A"], "handler": handler_a},
            {"url": "/api/doSomething2/", "allowed_class_types": ["class_B"], "handler": handler_b},
        ]
    )


@pytest.fixture
def manager(registry, codec, scheduler, clock, events):
    m = SessionManager(registry, codec=codec, scheduler=scheduler, clock=clock.time, event_logger=events)
    yield m
    m.shutdown()


@pytest.fixture
def router(registry, manager, events):
    return RequestRouter(registry, manager, event_logger=events)


@pytest.fixture
def demo_config(handler_a, handler_b):
    def build(mode: str = "Middleware", **extra):
        cfg = {
            "mode": mode,
            "endpoints": [
                {"url": "/api/doSomething1/", "allowed_class_types": ["class_A"], "handler": handler_a},
                {"url": "/api/doSomething2/", "allowed_class_types": ["class_B"], "handler": handler_b},
            ],
        }
        if mode == "Port":
            cfg["port"] = 9001
        cfg.update(extra)
        return cfg

    return build
