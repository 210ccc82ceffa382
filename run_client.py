"""
run_client.py
-------------

A tiny demo that connects to a running tracker server, keeps a local
mirror in sync and prints the roster of one class after every event.

Run:
    python run_client.py [server_url] [class_name]
"""

import asyncio
import sys

from roster_client import Disconnected, RosterClient


def print_roster(client: RosterClient, class_name: str) -> None:
    record = client.mirror.classes.get(class_name)
    if record is None:
        print(f"📭  No class named {class_name!r} (classes: {', '.join(client.mirror.classes) or 'none'})")
        return

    selected = client.mirror.selected.get(class_name)
    print(f"\n📚  {class_name}  –  week {record.get('currentWeekKey')}")
    for index, student in enumerate(record["students"]):
        marker = "👉" if index == selected else "  "
        print(f"  {marker} {student['name']:<24} {'★' * student['points']:<20} {student['points']:>2}")


async def main(url: str, class_name: str) -> None:
    async with RosterClient(url) as client:
        client.on_event = lambda event, data: print_roster(client, class_name)
        print(f"🔌  Connecting to {client.ws_url} – Ctrl+C to quit.")
        try:
            await client.run()
        except Disconnected as exc:
            print(f"❌  Disconnected: {exc.detail}")


if __name__ == "__main__":
    server_url = sys.argv[1] if len(sys.argv) > 1 else "http://localhost:3001"
    class_name = sys.argv[2] if len(sys.argv) > 2 else "Sample Class"
    try:
        asyncio.run(main(server_url, class_name))
    except KeyboardInterrupt:
        pass
