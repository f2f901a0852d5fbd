#!/usr/bin/env python3
"""Smoke check for the chat relay against a running server."""

import json
import sys
import time

import requests
from websockets.sync.client import connect

BASE_URL = "http://localhost:3001"
WS_URL = "ws://localhost:3001/ws"
EVENT_ID = 42


def recv(ws, expected_type):
    """Read frames until one of *expected_type* arrives."""
    while True:
        frame = json.loads(ws.recv(timeout=5))
        if frame["type"] == expected_type:
            return frame
        print(f"  (skipped {frame['type']}: {frame['data']})")


def check_chat_flow():
    """Persist a message over HTTP, relay it over the socket, read it back."""

    print("Checking health...")
    resp = requests.get(f"{BASE_URL}/api/health")
    if resp.status_code != 200:
        print(f"✗ Health check failed: {resp.status_code} - {resp.text}")
        return False
    print(f"✓ Server up, {resp.json()['clients']} socket client(s)")

    with connect(WS_URL) as alice, connect(WS_URL) as bob:
        for name, ws in (("alice", alice), ("bob", bob)):
            welcome = recv(ws, "system_message")
            print(f"✓ {name} connected: {welcome['data'].get('message')}")

        join = {"type": "join_event", "data": {"eventId": EVENT_ID}}
        ping = {"type": "system_message", "data": {"action": "ping"}}
        alice.send(json.dumps(join))
        # pong confirms alice's join was handled before bob joins
        alice.send(json.dumps(ping))
        recv(alice, "system_message")
        bob.send(json.dumps(join))
        joined = recv(alice, "user_joined")
        print(f"✓ alice saw bob join event {joined['eventId']}")

        print(f"\n--- Posting a message to event {EVENT_ID} ---")
        resp = requests.post(
            f"{BASE_URL}/api/events/{EVENT_ID}/messages",
            json={
                "message": f"hello at {int(time.time())}",
                "event_id": EVENT_ID,
                "user_id": 1,
                "user_name": "Alice",
            },
        )
        if resp.status_code != 201:
            print(f"✗ Failed to persist message: {resp.status_code} - {resp.text}")
            return False
        stored = resp.json()
        print(f"✓ Persisted message id={stored['id']}")

        alice.send(
            json.dumps(
                {
                    "type": "chat_message",
                    "data": stored,
                    "timestamp": stored["created_at"],
                    "eventId": EVENT_ID,
                }
            )
        )
        for name, ws in (("alice", alice), ("bob", bob)):
            relayed = recv(ws, "chat_message")
            if relayed["data"]["id"] != stored["id"]:
                print(f"✗ {name} got the wrong message: {relayed}")
                return False
            print(f"✓ {name} received relayed message id={relayed['data']['id']}")

        bob.send(json.dumps(ping))
        pong = recv(bob, "system_message")
        print(f"✓ ping answered with {pong['data']}")

    history = requests.get(f"{BASE_URL}/api/events/{EVENT_ID}/messages").json()
    print(f"✓ History holds {len(history)} message(s)")

    print("\n✓ Check completed!")
    return True


if __name__ == "__main__":
    sys.exit(0 if check_chat_flow() else 1)
