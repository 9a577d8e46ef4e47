from tests.fakes.fake_runtime import FakeRuntime

__all__ = ["FakeRuntime"]
