"""
Playwright glue: a DomSource backed by a live page (or one of its frames), and the
broadcaster that hands a successful extraction back to the page.
"""

import json
import logging
from typing import Optional

from playwright.async_api import Error as PWError
from playwright.async_api import Frame, Page, async_playwright

from backend.idx.parsing import PageSnapshot
from backend.idx.scheduler import MutationStream
from backend.py_models.property import PropertyRecord

log = logging.getLogger("idx.browser")

BINDING_NAME = "__idxDomChanged"
GLOBAL_NAME = "ihfPropertyData"
SESSION_KEY = "ihfPropertyData"
READY_EVENT = "ihfPropertyDataReady"
PARENT_MESSAGE_TYPE = "propertyDataReady"

_OBSERVER_JS = """
(() => {
  if (window.__idxObserver) return;
  const start = () => {
    if (!document.body) { setTimeout(start, 250); return; }
    window.__idxObserver = new MutationObserver((mutations) => {
      const added = mutations.reduce((n, m) => n + m.addedNodes.length, 0);
      if (added > 0 && typeof window.%(binding)s === 'function') window.%(binding)s(added);
    });
    window.__idxObserver.observe(document.body, { childList: true, subtree: true });
  };
  start();
})();
""" % {"binding": BINDING_NAME}

_DISCONNECT_JS = """
() => {
  if (window.__idxObserver) { window.__idxObserver.disconnect(); window.__idxObserver = null; }
}
"""

_BROADCAST_JS = """
([payload, names]) => {
  window[names.global] = payload;
  try { sessionStorage.setItem(names.session, JSON.stringify(payload)); } catch (e) {}
  window.dispatchEvent(new CustomEvent(names.event, { detail: payload }));
  if (window.parent && window.parent !== window) {
    window.parent.postMessage({ type: names.message, data: payload }, '*');
  }
  return true;
}
"""


async def launch_browser(headless: bool = True):
    _p = await async_playwright().start()
    browser = await _p.chromium.launch(headless=headless)
    # Stash the Playwright controller so we can stop it later.
    setattr(browser, "_playwright", _p)
    return browser


async def close_browser(browser) -> None:
    try:
        await browser.close()
    finally:
        p = getattr(browser, "_playwright", None)
        if p is not None:
            await p.stop()


async def new_page(browser) -> Page:
    context = await browser.new_context()
    return await context.new_page()


class PlaywrightDomSource:
    """
    Snapshots the widget's rendered DOM and forwards MutationObserver notifications
    from the page into `changes`. Pass `frame` when the widget lives in an iframe.
    """

    def __init__(self, page: Page, frame: Optional[Frame] = None):
        self.page = page
        self.frame = frame
        self.changes = MutationStream()
        self._attached = False

    @property
    def target(self):
        return self.frame or self.page

    async def attach(self) -> None:
        if self._attached:
            return
        await self.page.expose_binding(BINDING_NAME, self._on_binding)
        await self.page.add_init_script(_OBSERVER_JS)
        try:
            await self.target.evaluate(_OBSERVER_JS)
        except PWError as e:
            # page still navigating; the init script installs the observer on load
            log.debug("OBSERVER DEFERRED | err=%s", e)
        self._attached = True

    async def detach(self) -> None:
        if not self._attached:
            return
        self._attached = False
        try:
            await self.target.evaluate(_DISCONNECT_JS)
        except PWError as e:
            log.debug("OBSERVER DISCONNECT FAILED | err=%s", e)

    def _on_binding(self, source, added_nodes) -> None:
        # the init script runs in every frame; only the widget's frame counts
        if self.frame is not None and source.get("frame") is not self.frame:
            return
        try:
            self.changes.emit(int(added_nodes))
        except (TypeError, ValueError):
            return

    async def snapshot(self) -> PageSnapshot:
        target = self.target
        html = await target.content()
        title = await target.title()
        return PageSnapshot(html=html, url=target.url, title=title)


class PageBroadcaster:
    """
    Publishes a record to the page the way widget consumers expect it:
    window.ihfPropertyData, sessionStorage, an 'ihfPropertyDataReady' event, and a
    {type: 'propertyDataReady', data} message to the parent when framed.
    """

    def __init__(self, target):
        self.target = target

    async def __call__(self, record: PropertyRecord) -> None:
        await self.publish(record)

    async def publish(self, record: PropertyRecord) -> None:
        payload = record.to_payload()
        names = {
            "global": GLOBAL_NAME,
            "session": SESSION_KEY,
            "event": READY_EVENT,
            "message": PARENT_MESSAGE_TYPE,
        }
        try:
            await self.target.evaluate(_BROADCAST_JS, [payload, names])
            log.info("BROADCAST | event=%s bytes=%d", READY_EVENT, len(json.dumps(payload)))
        except PWError as e:
            log.warning("BROADCAST FAILED | err=%s", e)
