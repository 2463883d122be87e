"""
Rendering sessions for Virtual Browser.

Provides Playwright-based render targets with:
- One browser instance and one page per session
- A frame capture loop streaming to the client connection
- Input relay, navigation tracking and per-connection session registry
"""
