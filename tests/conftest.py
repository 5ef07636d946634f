import pytest

import mutate
from tolerations import TolerationSettings


NOT_READY_SECONDS = 100
UNREACHABLE_SECONDS = 200


@pytest.fixture()
def settings():
    return TolerationSettings(
        not_ready_seconds=NOT_READY_SECONDS,
        unreachable_seconds=UNREACHABLE_SECONDS,
    )


@pytest.fixture()
def app():
    app = mutate.create_app(
        NOT_READY_TOLERATION_SECONDS=NOT_READY_SECONDS,
        UNREACHABLE_TOLERATION_SECONDS=UNREACHABLE_SECONDS,
        TESTING=True,
    )
    yield app


@pytest.fixture()
def client(app):
    return app.test_client()
