import asyncio

from playwright.async_api import Error as PWError

from backend.idx.browser import PARENT_MESSAGE_TYPE, READY_EVENT, PageBroadcaster, PlaywrightDomSource
from backend.py_models.property import PropertyRecord


class FakeTarget:
    def __init__(self, fail=False):
        self.fail = fail
        self.evaluated = []
        self.url = "https://homes.example.com/idx/listing?id=225012345"

    async def evaluate(self, script, arg=None):
        if self.fail:
            raise PWError("Execution context was destroyed")
        self.evaluated.append((script, arg))
        return True

    async def content(self):
        return "<html><body><h1>88 Harbor View Ln</h1></body></html>"

    async def title(self):
        return "88 Harbor View Ln, Folsom"


def test_broadcast_hands_payload_to_the_page():
    target = FakeTarget()
    record = PropertyRecord(address="123 Main St", price="725000", mlsId="225012345")

    asyncio.run(PageBroadcaster(target)(record))

    (script, (payload, names)), = target.evaluated
    assert "CustomEvent" in script and "postMessage" in script
    assert payload["mlsId"] == "225012345"
    assert payload["address"] == "123 Main St"
    assert names["event"] == READY_EVENT
    assert names["message"] == PARENT_MESSAGE_TYPE


def test_broadcast_failure_is_logged_not_raised():
    record = PropertyRecord(address="123 Main St", price="725000")
    asyncio.run(PageBroadcaster(FakeTarget(fail=True)).publish(record))


def test_binding_forwards_mutations_from_the_widget_frame_only():
    widget_frame, other_frame = object(), object()
    source = PlaywrightDomSource(page=FakeTarget(), frame=widget_frame)
    seen = []
    source.changes.subscribe(seen.append)

    source._on_binding({"frame": other_frame}, 7)
    source._on_binding({"frame": widget_frame}, 3)
    source._on_binding({"frame": widget_frame}, "not a number")

    assert seen == [3]


def test_snapshot_reads_the_target():
    source = PlaywrightDomSource(page=FakeTarget())
    snap = asyncio.run(source.snapshot())
    assert snap.title == "88 Harbor View Ln, Folsom"
    assert snap.url.endswith("id=225012345")
    assert "<h1>" in snap.html
