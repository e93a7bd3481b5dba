"""
Site analysis: load a page in Playwright and capture its markup, styles and
inline scripts so a plan can rebuild it inside the sandbox.
"""

from playwright.async_api import async_playwright

from planbox.errors import CollaboratorError
from planbox.models import AnalysisResult


USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/131.0.0.0 Safari/537.36"
)


def normalize_url(url: str) -> str:
    url = (url or "").strip()
    if url and not url.startswith(("http://", "https://")):
        url = "https://" + url
    return url


# Inline <style> blocks plus every same-origin stylesheet rule the browser exposes
_CSS_JS = '''() => {
    const chunks = [];
    for (const sheet of Array.from(document.styleSheets)) {
        try {
            const rules = Array.from(sheet.cssRules || []);
            chunks.push(rules.map(r => r.cssText).join("\\n"));
        } catch (e) {
            // cross-origin sheet, rules are not readable
        }
    }
    return chunks.filter(Boolean).join("\\n\\n");
}'''

_INLINE_JS = '''() => {
    return Array.from(document.querySelectorAll("script:not([src])"))
        .filter(s => !s.type || s.type === "text/javascript" || s.type === "module")
        .map(s => s.textContent || "")
        .filter(t => t.trim().length > 0)
        .join("\\n;\\n");
}'''

_META_JS = '''() => {
    return {
        title: document.title,
        description: document.querySelector('meta[name="description"]')?.content || '',
    };
}'''


async def analyze_site(url: str) -> AnalysisResult:
    """Capture HTML, CSS and inline JS of `url`. Raises CollaboratorError if the page won't load."""
    url = normalize_url(url)
    if not url:
        raise CollaboratorError("No URL given for analysis")

    print(f"  [analyse] Loading {url}")
    async with async_playwright() as p:
        browser = await p.chromium.launch(headless=True)
        try:
            context = await browser.new_context(
                viewport={"width": 1920, "height": 1080},
                user_agent=USER_AGENT,
            )
            page = await context.new_page()

            # Navigate, falling back to domcontentloaded for pages that never go idle
            try:
                await page.goto(url, wait_until="networkidle", timeout=15000)
            except Exception:
                try:
                    await page.goto(url, wait_until="domcontentloaded", timeout=10000)
                    await page.wait_for_timeout(2000)
                except Exception as e2:
                    raise CollaboratorError(f"Failed to load {url}: {e2}")

            html = await page.evaluate("() => document.body ? document.body.innerHTML : ''")

            try:
                css = await page.evaluate(_CSS_JS)
            except Exception as e:
                print(f"  [analyse] CSS extraction failed: {e}")
                css = ""

            try:
                js = await page.evaluate(_INLINE_JS)
            except Exception as e:
                print(f"  [analyse] Script extraction failed: {e}")
                js = ""

            try:
                meta = await page.evaluate(_META_JS)
            except Exception as e:
                print(f"  [analyse] Meta extraction failed: {e}")
                meta = {"title": "", "description": ""}

            base_url = page.url or url
        finally:
            await browser.close()

    print(f"  [analyse] Captured {len(html)} chars HTML, {len(css)} chars CSS, {len(js)} chars JS")
    return AnalysisResult(
        full_html=html,
        full_css=css,
        full_js=js,
        base_url=base_url,
        title=meta.get("title") or None,
        description=meta.get("description") or None,
    )
