from __future__ import annotations

import html

_PAGE = """<!DOCTYPE html>
<html>
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>{title}</title>
    <style>
        body {{
            font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;
            background: {background};
            color: #fff;
            min-height: 100vh;
            margin: 0;
            display: flex;
            align-items: center;
            justify-content: center;
        }}
        .card {{
            background: rgba(255, 255, 255, 0.12);
            border-radius: 16px;
            padding: 2.5rem;
            max-width: 480px;
            width: 90%;
            text-align: center;
        }}
        .detail {{
            font-family: monospace;
            background: rgba(0, 0, 0, 0.2);
            border-radius: 8px;
            padding: 0.5rem 1rem;
            word-break: break-word;
        }}
        button {{
            margin-top: 1.5rem;
            padding: 0.6rem 1.4rem;
            border: none;
            border-radius: 10px;
            font-size: 1rem;
            cursor: pointer;
        }}
    </style>
</head>
<body>
    <div class="card">
        <h1>{heading}</h1>
        {body}
        <button onclick="window.close()">Close Window</button>
    </div>
</body>
</html>
"""


def success_page() -> str:
    return _PAGE.format(
        title="Last.fm Authentication Success",
        background="linear-gradient(135deg, #667eea 0%, #764ba2 100%)",
        heading="Authentication Successful",
        body=(
            "<p>You have authorized the application with Last.fm.</p>"
            "<p>You can close this window and return to your application.</p>"
        ),
    )


def error_page(error: str, description: str = "") -> str:
    body = f'<div class="detail">Error: {html.escape(error)}</div>'
    if description:
        body += f"<p>{html.escape(description)}</p>"
    body += "<p>Please close this window and try authenticating again.</p>"
    return _PAGE.format(
        title="Authentication Error",
        background="linear-gradient(135deg, #ff6b6b 0%, #ee5a24 100%)",
        heading="Authentication Failed",
        body=body,
    )
