"""`cylon`: Cylon CLI (HTTP client).

This is the CLI entrypoint. Run from source with:
  `python -m apps.cli.main --help`
"""

from __future__ import annotations

import argparse
import json
import sys
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Sequence

from apps.cli.client import DEFAULT_URL, CylonClient, HttpError, build_run_payload

SMOKE_PROMPT = "In one word, what color is the sky?"


def print_json(obj: Any) -> None:
    print(json.dumps(obj, ensure_ascii=False, indent=2, sort_keys=True))


def _add_sampling_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--system", dest="system_prompt", default=None, help="System prompt (server default if omitted)")
    p.add_argument("--max-new-tokens", type=int, default=None, help="Maximum tokens to generate")
    p.add_argument("--temperature", type=float, default=None, help="Sampling temperature (0 = greedy)")
    p.add_argument("--top-p", type=float, default=None, help="Nucleus sampling cutoff")
    p.add_argument("--top-k", type=int, default=None, help="Top-k cutoff")
    p.add_argument("--seed", type=int, default=None, help="Sampling seed")
    p.add_argument("--stop", action="append", default=None, help="Stop sequence (repeatable)")
    p.add_argument("--priority", type=int, default=None, help="Queue priority (higher runs first)")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="cylon", description="Cylon CLI (HTTP client)")
    p.add_argument(
        "--url",
        default=DEFAULT_URL,
        help="Server base URL (default: %(default)s)",
    )
    p.add_argument("--timeout", type=float, default=300.0, help="Request timeout in seconds (default: %(default)s)")

    sub = p.add_subparsers(dest="command")

    run_p = sub.add_parser("run", help="Run one inference")
    run_p.add_argument("prompt", help="User message")
    _add_sampling_args(run_p)
    mode = run_p.add_mutually_exclusive_group()
    mode.add_argument("--stream", action="store_true", help="Stream tokens as they are generated")
    mode.add_argument("--detach", action="store_true", help="Queue the request and print its uuid")
    run_p.add_argument("--json", action="store_true", help="Machine-readable JSON output")

    for name, help_text in (
        ("status", "Show the status of a detached run"),
        ("result", "Fetch the result of a detached run"),
        ("cancel", "Cancel a detached run"),
    ):
        cmd_p = sub.add_parser(name, help=help_text)
        cmd_p.add_argument("uuid", help="Run uuid returned by `run --detach`")
        cmd_p.add_argument("--json", action="store_true", help="Machine-readable JSON output")

    fan_p = sub.add_parser("fanout", help="Send identical requests concurrently (smoke test)")
    fan_p.add_argument("prompt", nargs="?", default=SMOKE_PROMPT, help="User message (default: %(default)r)")
    fan_p.add_argument("-n", "--count", type=int, default=5, help="Number of concurrent requests (default: 5)")
    _add_sampling_args(fan_p)
    fan_p.add_argument("--json", action="store_true", help="Machine-readable JSON output")

    sub.add_parser("health", help="Check server health")
    return p


def _payload_from_args(args: argparse.Namespace, *, prompt: str, wait: bool = True) -> dict[str, Any]:
    return build_run_payload(
        prompt,
        system_prompt=args.system_prompt,
        max_new_tokens=args.max_new_tokens,
        temperature=args.temperature,
        top_p=args.top_p,
        top_k=args.top_k,
        seed=args.seed,
        stop=args.stop,
        priority=args.priority,
        wait=wait,
    )


def cmd_run(client: CylonClient, args: argparse.Namespace) -> int:
    if args.detach:
        result = client.inference_run(_payload_from_args(args, prompt=args.prompt, wait=False))
        if args.json:
            print_json(result)
        else:
            print(f"{result.get('uuid')} {result.get('status')}")
        return 0

    if args.stream:
        final: dict[str, Any] = {}
        for event in client.inference_run_stream(_payload_from_args(args, prompt=args.prompt)):
            if "delta" in event:
                print(event["delta"].get("content", ""), end="", flush=True)
            elif "error" in event:
                print(f"\nerror: {event['error'].get('message')}", file=sys.stderr)
                final = event
            elif "finish_reason" in event:
                final = event
        print()
        if args.json and final:
            print_json(final)
        return 1 if final.get("status") == "ERROR" or "error" in final else 0

    result = client.inference_run(_payload_from_args(args, prompt=args.prompt))
    if args.json:
        print_json(result)
    else:
        print((result.get("response") or {}).get("content", ""))
    return 0


def cmd_job(client: CylonClient, args: argparse.Namespace) -> int:
    if args.command == "status":
        result = client.inference_status(args.uuid)
    elif args.command == "result":
        result = client.inference_result(args.uuid)
    else:
        result = client.inference_cancel(args.uuid)

    if args.json:
        print_json(result)
    elif args.command == "result":
        response = result.get("response") or {}
        print(f"status: {result.get('status')} finish_reason: {result.get('finish_reason')}")
        if response:
            print(response.get("content", ""))
    else:
        print(f"{result.get('uuid', args.uuid)} {result.get('status')}")
    return 0


def cmd_fanout(client: CylonClient, args: argparse.Namespace) -> int:
    if args.count <= 0:
        print("error: --count must be > 0", file=sys.stderr)
        return 2
    payload = _payload_from_args(args, prompt=args.prompt)

    def one(i: int) -> dict[str, Any]:
        t0 = time.monotonic()
        try:
            result = client.inference_run(payload)
            outcome = {
                "index": i,
                "ok": True,
                "uuid": result.get("uuid"),
                "finish_reason": result.get("finish_reason"),
                "content": (result.get("response") or {}).get("content", ""),
            }
        except HttpError as exc:
            outcome = {"index": i, "ok": False, "status_code": exc.status_code, "error": exc.body or exc.message}
        outcome["elapsed_s"] = round(time.monotonic() - t0, 3)
        return outcome

    with ThreadPoolExecutor(max_workers=args.count) as pool:
        results = list(pool.map(one, range(args.count)))

    if args.json:
        print_json(results)
    else:
        for r in results:
            if r["ok"]:
                print(f"[{r['index']}] {r['elapsed_s']:.2f}s {r['finish_reason']}: {r['content']!r}")
            else:
                print(f"[{r['index']}] {r['elapsed_s']:.2f}s failed ({r['status_code']}): {r['error']}")
    return 0 if all(r["ok"] for r in results) else 1


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    command = args.command
    if command is None:
        parser.print_help()
        return 0

    client = CylonClient(base_url=args.url, timeout_s=args.timeout)
    try:
        if command == "run":
            return cmd_run(client, args)
        if command in {"status", "result", "cancel"}:
            return cmd_job(client, args)
        if command == "fanout":
            return cmd_fanout(client, args)
        if command == "health":
            print_json(client.health())
            return 0
    except HttpError as exc:
        print(str(exc), file=sys.stderr)
        return 1
    parser.error(f"Unknown command: {command!r}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
