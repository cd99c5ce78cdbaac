from __future__ import annotations
import argparse
import json
import sys
import time
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import unquote

import requests

from config import settings

# -----------------------------
# Config defaults
# -----------------------------
DEFAULT_BASE_URL = settings.BASE_URL
API = "/v1/coach/sessions"

# -----------------------------
# Simple HTTP client helpers
# -----------------------------
def _post(base_url: str, path: str, payload: Optional[Dict[str, Any]] = None, timeout: float = 180) -> Dict[str, Any]:
    url = f"{base_url.rstrip('/')}{path}"
    r = requests.post(url, json=payload or {}, timeout=timeout)
    if r.status_code >= 400:
        print(f"\n[CLIENT] HTTP {r.status_code} from {url}")
        try:
            print("[CLIENT] Body:", r.json())
        except ValueError:
            print("[CLIENT] Body:", r.text[:1000])
        r.raise_for_status()
    return r.json()

def _get(base_url: str, path: str) -> Dict[str, Any]:
    url = f"{base_url.rstrip('/')}{path}"
    r = requests.get(url, timeout=60)
    r.raise_for_status()
    return r.json()

# -----------------------------
# API wrappers
# -----------------------------
def create_session(base_url: str) -> Dict[str, Any]:
    return _post(base_url, API)

def unlock(base_url: str, sid: str, passcode: str) -> Dict[str, Any]:
    return _post(base_url, f"{API}/{sid}/passcode", {"passcode": passcode})

def start(base_url: str, sid: str) -> Dict[str, Any]:
    return _post(base_url, f"{API}/{sid}/start")

def submit_api_key(base_url: str, sid: str, api_key: str) -> Dict[str, Any]:
    return _post(base_url, f"{API}/{sid}/api-key", {"api_key": api_key})

def begin_writing(base_url: str, sid: str) -> Dict[str, Any]:
    return _post(base_url, f"{API}/{sid}/writing")

def submit_paragraph(base_url: str, sid: str, text: str) -> Dict[str, Any]:
    return _post(base_url, f"{API}/{sid}/paragraphs", {"text": text})

def advance(base_url: str, sid: str) -> Dict[str, Any]:
    return _post(base_url, f"{API}/{sid}/advance")

def save_reflection(base_url: str, sid: str, summary: str) -> Dict[str, Any]:
    return _post(base_url, f"{API}/{sid}/reflection", {"summary": summary})

def get_state(base_url: str, sid: str) -> Dict[str, Any]:
    return _get(base_url, f"{API}/{sid}")

def retry(base_url: str, sid: str) -> Dict[str, Any]:
    return _post(base_url, f"{API}/{sid}/retry")

def dismiss(base_url: str, sid: str) -> Dict[str, Any]:
    return _post(base_url, f"{API}/{sid}/dismiss")

def close_session(base_url: str, sid: str) -> None:
    requests.delete(f"{base_url.rstrip('/')}{API}/{sid}", timeout=60).raise_for_status()

def download_transcript(base_url: str, sid: str, out_dir: Path) -> Path:
    r = requests.get(f"{base_url.rstrip('/')}{API}/{sid}/transcript", timeout=60)
    r.raise_for_status()
    disposition = r.headers.get("content-disposition", "")
    name = "transcript.txt"
    if "filename*=UTF-8''" in disposition:
        name = unquote(disposition.split("filename*=UTF-8''", 1)[1])
    path = out_dir / name
    path.write_text(r.text, encoding="utf-8")
    return path

# -----------------------------
# Pretty printers
# -----------------------------
def print_prompt(prompt: Dict[str, Any]) -> None:
    print(f"\n===== {prompt['title']} =====")
    print(prompt["material"])
    print(f"\n【寫作引導】\n{prompt['question']}")
    print(f"\n提示：{prompt['guidance']}")
    print("=" * 32)

def print_guide(guide: Dict[str, Any]) -> None:
    print(f"\n--- 段落 {guide['index'] + 1} / 5：{guide['title']} ---")
    print(guide["description"])
    print(f"目標：{guide['goal']}")

def print_review(rev: Dict[str, Any]) -> None:
    range_note = "" if rev["within_range"] else "  (outside suggested length)"
    print(f"\n===== Paragraph {rev['index'] + 1} Review =====")
    print(f"Word count:  {rev['word_count']}{range_note}")
    print(f"\n--- 教練評析 ---\n{rev['critique']}")
    print(f"\n--- AI 優化版本 ---\n{rev['refined']}")
    print("=" * 32)

def read_paragraph() -> str:
    print("(Enter your paragraph; finish with an empty line)")
    lines: List[str] = []
    while True:
        line = input()
        if not line.strip():
            break
        lines.append(line)
    return "\n".join(lines)

# -----------------------------
# Upstream failure recovery
# -----------------------------
def _is_upstream_failure(err: requests.HTTPError) -> bool:
    return err.response is not None and err.response.status_code == 502

def recover(base_url: str, sid: str, interactive: bool) -> Dict[str, Any]:
    """
    Session is parked in the failed phase: offer retry or dismiss.
    Returns the session state after whichever the user picked.
    """
    while True:
        st = get_state(base_url, sid)
        print(f"\n❌ Coach service failed: {st['error']}")
        if not interactive:
            sys.exit(1)
        choice = input("[r]etry or [d]ismiss? ").strip().lower()
        if choice.startswith("d"):
            return dismiss(base_url, sid)
        if not choice.startswith("r"):
            continue
        try:
            return retry(base_url, sid)
        except requests.HTTPError as e:
            if not _is_upstream_failure(e):
                raise

def _call_or_recover(base_url: str, sid: str, interactive: bool, fn, *args) -> Dict[str, Any]:
    try:
        return fn(base_url, sid, *args)
    except requests.HTTPError as e:
        if not _is_upstream_failure(e):
            raise
        return recover(base_url, sid, interactive)

# -----------------------------
# Shared setup: unlock, key, prompt
# -----------------------------
def _open_session(base_url: str, passcode: str, api_key: Optional[str], interactive: bool) -> Dict[str, Any]:
    st = create_session(base_url)
    sid = st["session_id"]
    print(f"\n✅ Session created: {sid}")

    while True:
        try:
            st = unlock(base_url, sid, passcode)
            break
        except requests.HTTPError:
            if not interactive:
                raise
            passcode = input("Passcode: ")

    while st["phase"] != "reading_prompt":
        if st["phase"] == "api_key_entry":
            key = api_key or (input("OpenRouter API key: ").strip() if interactive else "")
            # A rejected key is dropped by the server, so ask again next time round
            api_key = None
            if not key:
                print("❌ No API key configured on the server and none supplied (--api-key).")
                sys.exit(1)
            print("\n⏳ Generating exam prompt...")
            st = _call_or_recover(base_url, sid, interactive, submit_api_key, key)
        else:
            print("\n⏳ Generating exam prompt...")
            st = _call_or_recover(base_url, sid, interactive, start)
    return st

# -----------------------------
# Interactive play loop
# -----------------------------
def interactive_play(base_url: str, passcode: str, api_key: Optional[str], out_dir: Path) -> None:
    st = _open_session(base_url, passcode, api_key, interactive=True)
    sid = st["session_id"]
    print_prompt(st["prompt"])
    input("\nPress Enter to start writing...")
    st = begin_writing(base_url, sid)

    while st["phase"] == "writing":
        print_guide(st["current_guide"])
        if st.get("pending_draft"):
            print(f"(Your last draft, for reference)\n{st['pending_draft']}\n")
        text = read_paragraph()
        if len(text) < 10:
            print("⚠️  A paragraph needs at least 10 characters.")
            continue
        print("\n⏳ Coach is reviewing...")
        try:
            rev = submit_paragraph(base_url, sid, text)
        except requests.HTTPError as e:
            if not _is_upstream_failure(e):
                raise
            st = recover(base_url, sid, interactive=True)
            if st["phase"] != "reviewing_paragraph":
                continue
            rev = st["reviews"][-1]
        print_review(rev)
        input("\nPress Enter to continue...")
        st = advance(base_url, sid)

    summary = ""
    while not summary.strip():
        summary = input("\n寫作反思 (one line): ")
    save_reflection(base_url, sid, summary)
    path = download_transcript(base_url, sid, out_dir)
    print(f"\n📄 Transcript saved to {path}")
    close_session(base_url, sid)

# -----------------------------
# Auto-demo play loop
# -----------------------------
DEMO_PARAGRAPHS: List[str] = [
    "每個人心中都有一盞燈，它不一定明亮，卻總在最黑暗的時刻提醒我們方向。這盞燈，或許是一句話，或許是一個人。",
    "國三那年冬天，我在補習班待到深夜，走出門時街道一片漆黑，只有巷口便利商店的燈還亮著。店員阿姨遞給我一杯熱豆漿，說：「辛苦了。」",
    "後來我才明白，那盞燈之所以溫暖，不在於光的強弱，而在於有人願意為陌生人留一點光。原來照亮別人，也是一種勇氣。",
    "社會上有許多默默守夜的人，夜班護理師、清潔隊員、便利商店店員，他們的光微小卻恆常，撐起了城市的夜晚。",
    "如今我也想成為一盞燈。不必耀眼，只要在某個人迷路的夜裡，恰好亮著，就足夠了。",
]

def auto_demo_play(base_url: str, passcode: str, api_key: Optional[str], out_dir: Path) -> None:
    """
    Runs a canned five-paragraph session for quick verification.
    """
    print("\n🤖 Running auto-demo...")
    st = _open_session(base_url, passcode, api_key, interactive=False)
    sid = st["session_id"]
    print_prompt(st["prompt"])
    begin_writing(base_url, sid)

    for text in DEMO_PARAGRAPHS:
        rev = _call_or_recover(base_url, sid, False, submit_paragraph, text)
        print_review(rev)
        advance(base_url, sid)
        time.sleep(0.5)

    save_reflection(base_url, sid, "學會了用具體經驗承接主旨，並由小見大。")
    path = download_transcript(base_url, sid, out_dir)
    print(f"\n📄 Transcript saved to {path}")

    state = get_state(base_url, sid)
    print("\n===== SESSION STATE =====")
    print(json.dumps({k: state[k] for k in ("phase", "current_paragraph_index")}, indent=2))
    print(f"Paragraphs: {len(state['paragraphs'])}  Reviews: {len(state['reviews'])}")
    print("=" * 26)
    close_session(base_url, sid)

# -----------------------------
# Run server (programmatically)
# -----------------------------
def run_server(port: int, host: str = "127.0.0.1", reload: bool = True) -> None:
    import uvicorn
    uvicorn.run("api:app", host=host, port=port, reload=reload)

# -----------------------------
# Health checker
# -----------------------------
def health_check(base_url: str) -> None:
    print(f"🔎 Checking server at {base_url} ...")
    try:
        guides = _get(base_url, "/v1/coach/guides")
        print(f"✅ Guides reachable ({len(guides)} paragraphs)")

        st = create_session(base_url)
        print(f"✅ JSON API ok (session_id={st['session_id']}, phase={st['phase']})")
        close_session(base_url, st["session_id"])
    except requests.RequestException as e:
        print(f"❌ Health check failed: {e}")
        sys.exit(1)

# -----------------------------
# CLI
# -----------------------------
def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Essay Coach: server + terminal client in one file")

    sub = p.add_subparsers(dest="cmd", required=True)

    ps = sub.add_parser("serve", help="Start the FastAPI server (uvicorn)")
    ps.add_argument("--port", type=int, default=8000, help="Port to bind")
    ps.add_argument("--host", type=str, default="127.0.0.1", help="Host to bind")
    ps.add_argument("--no-reload", action="store_true", help="Disable auto-reload")

    pp = sub.add_parser("play", help="Write a five-paragraph essay with the coach (interactive or auto)")
    pp.add_argument("--base-url", type=str, default=DEFAULT_BASE_URL, help="API base URL")
    pp.add_argument("--passcode", type=str, default=settings.ACCESS_PASSCODE, help="Access passcode")
    pp.add_argument("--api-key", type=str, default=None, help="OpenRouter key if the server has none")
    pp.add_argument("--out-dir", type=Path, default=Path("."), help="Where to save the transcript")
    pp.add_argument("--auto-demo", action="store_true", help="Run a canned demo instead of prompting")

    ph = sub.add_parser("health", help="Check server availability")
    ph.add_argument("--base-url", type=str, default=DEFAULT_BASE_URL, help="API base URL")

    return p.parse_args()

def main() -> None:
    args = parse_args()

    if args.cmd == "serve":
        run_server(port=args.port, host=args.host, reload=(not args.no_reload))
        return

    if args.cmd == "play":
        try:
            requests.get(f"{args.base_url.rstrip('/')}/v1/coach/guides", timeout=5).raise_for_status()
        except requests.RequestException:
            print("⚠️  Could not reach the server. Is it running?\n"
                  "    Start it in another terminal:\n"
                  "    python main.py serve")
            sys.exit(1)

        if args.auto_demo:
            auto_demo_play(args.base_url, args.passcode, args.api_key, args.out_dir)
        else:
            interactive_play(args.base_url, args.passcode, args.api_key, args.out_dir)
        return

    if args.cmd == "health":
        health_check(args.base_url)
        return

    print("Unknown command. Try: python main.py --help")
    sys.exit(2)

if __name__ == "__main__":
    main()
