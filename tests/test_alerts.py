import sys
from pathlib import Path
from unittest.mock import MagicMock

import requests

sys.path.append(str(Path(__file__).resolve().parents[1]))

from services.alerts import ErrorReporter


def _raise(exc):
    try:
        raise exc
    except Exception as e:
        return e


def test_report_posts_payload():
    session = MagicMock()
    rep = ErrorReporter("http://web:3000/", api_key="k", background=False, session=session)
    assert rep.report("runModel/4h", _raise(RuntimeError("boom")))

    args, kwargs = session.post.call_args
    assert args[0] == "http://web:3000/internal/errors"
    assert kwargs["headers"]["X-Internal-Key"] == "k"
    payload = kwargs["json"]
    assert payload["service"] == "mtf-runner"
    assert payload["location"] == "runModel/4h"
    assert payload["message"] == "boom"
    assert "RuntimeError" in payload["stack"]


def test_cooldown_per_location():
    session = MagicMock()
    rep = ErrorReporter("http://web", cooldown_sec=60, background=False, session=session)
    assert rep.report("a", "first")
    assert not rep.report("a", "second")
    assert rep.report("b", "other")
    assert session.post.call_count == 2


def test_disabled_and_network_errors_never_raise():
    session = MagicMock()
    assert not ErrorReporter("http://web", enabled=False, session=session).report("a", "x")
    session.post.side_effect = requests.ConnectionError("down")
    rep = ErrorReporter("http://web", background=False, session=session)
    assert rep.report("a", ValueError("x"))
    payload = rep.build_payload("a", ValueError("x"))
    assert payload["stack"] is None and payload["message"] == "x"
