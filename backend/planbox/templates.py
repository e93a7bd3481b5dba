"""
Next.js project template files written into fresh sandboxes, plus the
supporting Tailwind files injected whenever a plan pulls in a site analysis.
"""

import json


# ── Base project ─────────────────────────────────────────────────────────────

NEXT_SCRIPTS = {
    "dev": "next dev -p 3000 -H 0.0.0.0",
    "build": "next build",
    "start": "next start -p 3000 -H 0.0.0.0",
}

BASE_DEPENDENCIES = {
    "next": "14.2.3",
    "react": "18.2.0",
    "react-dom": "18.2.0",
}

ROOT_LAYOUT = '''export default function RootLayout({ children }: { children: React.ReactNode }) {
  return <html lang="en"><body>{children}</body></html>;
}'''

PAGE_TEMPLATE = '''"use client";
export default function Page() {
  return <h1>Hello from Next.js in the sandbox</h1>;
}'''


def build_package_json(dependencies: dict | None = None, dev_dependencies: dict | None = None) -> str:
    """package.json with the base Next.js deps, overlaid with the plan's own."""
    package = {
        "name": "nextjs-app",
        "private": True,
        "scripts": dict(NEXT_SCRIPTS),
        "dependencies": {**BASE_DEPENDENCIES, **(dependencies or {})},
    }
    if dev_dependencies:
        package["devDependencies"] = dict(dev_dependencies)
    return json.dumps(package, indent=2)


SCAFFOLD_FILES = {
    "app/layout.tsx": ROOT_LAYOUT,
    "app/page.tsx": PAGE_TEMPLATE,
}


# ── Tailwind support for analysed pages ──────────────────────────────────────

TAILWIND_CONFIG = '''/** @type {import('tailwindcss').Config} */
module.exports = {
  content: [
    './pages/**/*.{js,ts,jsx,tsx,mdx}',
    './components/**/*.{js,ts,jsx,tsx,mdx}',
    './app/**/*.{js,ts,jsx,tsx,mdx}',
  ],
  theme: {
    extend: {},
  },
  plugins: [],
}'''

POSTCSS_CONFIG = '''module.exports = {
  plugins: {
    tailwindcss: {},
    autoprefixer: {},
  },
}'''

TAILWIND_DEV_DEPENDENCIES = {
    "tailwindcss": "^3.4.0",
    "autoprefixer": "^10.4.0",
    "postcss": "^8.4.0",
}

SUPPORT_FILES = {
    "tailwind.config.js": TAILWIND_CONFIG,
    "postcss.config.js": POSTCSS_CONFIG,
}

TAILWIND_DIRECTIVES = '''@tailwind base;
@tailwind components;
@tailwind utilities;
'''

DEFAULT_CSS = '''/* Base styles */
@import url('https://fonts.googleapis.com/css2?family=Inter:wght@400;500;600;700&display=swap');

* {
  box-sizing: border-box;
}

body {
  font-family: 'Inter', sans-serif;
  margin: 0;
  padding: 0;
}'''


# ── Page generated from a captured site ──────────────────────────────────────

# Placeholders are swapped with str.replace so the JS braces need no escaping
ANALYZED_PAGE_TEMPLATE = '''"use client";
import { useEffect } from "react";

export default function Page() {
  useEffect(() => {
    try {
      const script = document.createElement("script");
      script.type = "text/javascript";
      script.innerHTML = `__CAPTURED_JS__`;
      document.body.appendChild(script);

      return () => {
        try {
          script.remove();
        } catch(e) {}
      };
    } catch(e) {
      console.error("Script injection failed:", e);
    }
  }, []);

  return <div dangerouslySetInnerHTML={{ __html: `__CAPTURED_HTML__` }} />;
}'''
