"""Search automation scripts executed by the headless browser.

Each template has a single query slot. The query is inserted as a JSON
string literal, which is also a valid JavaScript string literal, so it
cannot close the literal or inject statements.
"""

import json

from mirrorwatch.models import SearchProvider

QUERY_SLOT = "__MIRRORWATCH_QUERY__"

GOOGLE_SEARCH_SCRIPT = """
module.exports = async ({ page }) => {
  const query = __MIRRORWATCH_QUERY__;

  await page.goto("https://www.google.com", { waitUntil: "domcontentloaded" });

  // Accept cookies if present
  try {
    await page.click('button[id="L2AGLb"]', { timeout: 3000 });
  } catch (e) {}

  await page.focus("textarea[name='q'], input[name='q']");
  for (const ch of query) {
    await page.keyboard.type(ch);
    await new Promise((r) => setTimeout(r, 60 + Math.random() * 120));
  }
  await page.keyboard.press("Enter");

  await page.waitForSelector("h3", { timeout: 10000 });

  const results = await page.evaluate((limit) => {
    return Array.from(document.querySelectorAll("h3"))
      .slice(0, limit)
      .map((el) => {
        const link = el.closest("a");
        return { title: el.innerText, url: link ? link.href : null };
      })
      .filter((result) => result.url);
  }, 10);

  return JSON.stringify(results);
};
"""

DUCKDUCKGO_SEARCH_SCRIPT = """
module.exports = async ({ page }) => {
  const query = __MIRRORWATCH_QUERY__;

  await page.goto("https://duckduckgo.com", { waitUntil: "domcontentloaded" });

  await page.type("input[name='q']", query);
  await page.keyboard.press("Enter");

  await page.waitForSelector("h2 a", { timeout: 10000 });

  const results = await page.evaluate((limit) => {
    return Array.from(document.querySelectorAll("h2 a"))
      .slice(0, limit)
      .map((el) => ({ title: el.innerText, url: el.href }))
      .filter((result) => result.url);
  }, 10);

  return JSON.stringify(results);
};
"""

SCRIPT_TEMPLATES = {
    SearchProvider.PRIMARY: GOOGLE_SEARCH_SCRIPT,
    SearchProvider.SECONDARY: DUCKDUCKGO_SEARCH_SCRIPT,
}


def escape_js_string(value: str) -> str:
    """Return ``value`` as a double-quoted JavaScript string literal."""
    # ensure_ascii also escapes U+2028/U+2029, which older engines treat
    # as line terminators inside string literals. "<\/" keeps "</script>"
    # inert if the script is ever embedded in a page.
    return json.dumps(value, ensure_ascii=True).replace("</", "<\\/")


def build_search_script(provider: SearchProvider, query: str) -> str:
    """Build the automation script for one provider and query.

    Args:
        provider: Search engine to drive.
        query: Raw search query.

    Returns:
        Script source with the escaped query in its single slot.
    """
    template = SCRIPT_TEMPLATES[provider]
    return template.replace(QUERY_SLOT, escape_js_string(query), 1)
