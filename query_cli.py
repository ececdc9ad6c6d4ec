"""Quick CLI check against a running journalq server.

Usage:
    python query_cli.py <owner-uuid> "How have I been sleeping this week?"
    python query_cli.py <owner-uuid>            # runs the sample questions
"""
import json
import sys

import httpx

BASE = "http://localhost:8000"

SAMPLES = [
    "How have I been feeling this week?",
    "What made me anxious last month and how did I cope?",
    "How many entries did I write about work in March?",
    "What's the weather like today?",  # Should redirect to the journal
]


def ask(owner_id: str, text: str):
    print(f"\n{'='*60}")
    print(f"QUESTION: {text}")
    print('='*60)

    try:
        r = httpx.post(f"{BASE}/api/query", json={"text": text, "owner_id": owner_id}, timeout=60)
        r.raise_for_status()
        data = r.json()
    except httpx.ConnectError:
        print("ERROR: Can't connect. Is the server running?")
        print("Start with: uvicorn main:app --reload --port 8000")
        return
    except httpx.HTTPError as e:
        print(f"ERROR: {e}")
        return

    meta = data.get("metadata", {})
    print(f"Status: {data['status_summary']}")
    print(f"Degraded: {data['degraded']}")
    print(f"Latency: {meta.get('latency_ms')}ms | Strategy: {meta.get('execution_strategy')}")
    print(f"Sources: {len(data['source_record_refs'])}")
    print(f"\nANSWER:\n{data['answer_text']}")

    for stage in data.get("trace", {}).get("stages", []):
        mark = "ok" if stage["success"] else f"FAILED ({stage['error']})"
        print(f"  {stage['agent']:<13} {stage['time_ms']:>6}ms  {mark}")


def main():
    if len(sys.argv) < 2:
        print(__doc__)
        return

    print("Checking server health...")
    try:
        h = httpx.get(f"{BASE}/api/health").json()
    except httpx.HTTPError:
        print("Server not running. Start it first!")
        return
    print(f"Server running | Mode: {h['mode']} | LLM: {h['llm_provider']}")
    print(json.dumps(h["store"], indent=2))

    owner_id = sys.argv[1]
    questions = [" ".join(sys.argv[2:])] if len(sys.argv) > 2 else SAMPLES
    for q in questions:
        ask(owner_id, q)


if __name__ == "__main__":
    main()
