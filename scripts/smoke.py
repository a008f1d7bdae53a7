#!/usr/bin/env python3
"""
Smoke test for a running job engine using urllib.request (no external deps)
"""
import json
import os
import sys
import time
import urllib.error
import urllib.request

BASE_URL = os.getenv("BASE_URL", "http://127.0.0.1:8484")


def call(method, path, body=None):
    """Return (status, json body) for one request"""
    data = json.dumps(body).encode("utf-8") if body is not None else None
    request = urllib.request.Request(
        f"{BASE_URL}{path}", data=data, method=method, headers={"Content-Type": "application/json"}
    )
    try:
        with urllib.request.urlopen(request) as response:
            return response.status, json.loads(response.read().decode("utf-8"))
    except urllib.error.HTTPError as e:
        return e.code, json.loads(e.read().decode("utf-8") or "{}")


def check(name, ok, detail=""):
    print(f"{'✅' if ok else '❌'} {name} {detail}".rstrip())
    return ok


def main():
    """Run all smoke tests"""
    print("🚀 Running smoke tests against", BASE_URL)
    failed = 0

    status, body = call("GET", "/v1/health")
    failed += not check("/v1/health", status == 200 and body.get("status") == "ok")

    status, body = call("POST", "/v1/jobs", {"type": "no-such-type", "target": "all"})
    failed += not check("unknown job type is refused", status == 400, body.get("code", ""))

    status, body = call("POST", "/v1/jobs", {"type": "deploy", "target": "smoke", "environment": "prod"})
    failed += not check("protected environment is refused", status == 403, body.get("code", ""))

    status, body = call("POST", "/v1/jobs", {"type": "tail-logs", "target": "smoke-test"})
    if check("create tail-logs job", status == 200, str(status)):
        job_id = body["job"]["id"]
        time.sleep(1)
        status, body = call("POST", f"/v1/jobs/{job_id}/cancel")
        final = body.get("job", {}).get("status")
        failed += not check("cancel settles the job", status == 200 and final in ("cancelled", "failed"), final or "")
    else:
        failed += 1

    status, body = call("GET", "/v1/jobs?active=true")
    failed += not check("no active jobs left", status == 200 and body.get("jobs") == [])

    if failed:
        print(f"\n💥 {failed} smoke test(s) failed")
        sys.exit(1)
    print("\n🎉 All smoke tests passed")


if __name__ == "__main__":
    main()
