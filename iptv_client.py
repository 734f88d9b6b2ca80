#!/usr/bin/env python3

import requests
import json
import argparse
import os
from urllib.parse import urlparse


class IPTVRelayClient:
    def __init__(self, base_url="http://localhost:5000", timeout=90):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def _json(self, response):
        """Return the JSON body, raising with the relay's error message on failure"""
        if response.status_code >= 400:
            try:
                message = response.json().get("error") or response.text
            except ValueError:
                message = response.text
            raise requests.HTTPError(f"{response.status_code}: {message}", response=response)
        return response.json()

    def get_health(self):
        """Get health status"""
        response = requests.get(f"{self.base_url}/health", timeout=self.timeout)
        return self._json(response)

    def fetch_playlist(self, url):
        """Parse a remote playlist"""
        response = requests.post(f"{self.base_url}/playlist/fetch", json={"url": url}, timeout=self.timeout)
        return self._json(response)

    def upload_playlist(self, path):
        """Upload a playlist file"""
        with open(path, "rb") as fh:
            files = {"file": (os.path.basename(path), fh, "audio/x-mpegurl")}
            response = requests.post(f"{self.base_url}/playlist/upload", files=files, timeout=self.timeout)
        return self._json(response)

    def parse_text(self, content):
        """Parse playlist text"""
        response = requests.post(f"{self.base_url}/playlist/text", json={"content": content}, timeout=self.timeout)
        return self._json(response)

    def check_stream(self, url):
        """Check if a stream answers"""
        response = requests.post(f"{self.base_url}/stream/check", json={"url": url}, timeout=self.timeout)
        return self._json(response)

    def fetch_epg(self, url, output):
        """Save an EPG document through the relay"""
        response = requests.post(f"{self.base_url}/epg/fetch", json={"url": url}, timeout=self.timeout)
        if response.status_code >= 400:
            self._json(response)
        with open(output, "wb") as fh:
            fh.write(response.content)
        return len(response.content)

    def download(self, url, output=None, filename=None, chunk_size=65536):
        """Stream a file through the relay to disk"""
        params = {"url": url}
        if filename:
            params["filename"] = filename
        with requests.get(f"{self.base_url}/download", params=params, stream=True, timeout=self.timeout) as response:
            if response.status_code >= 400:
                self._json(response)
            target = output or filename or os.path.basename(urlparse(url).path) or "video.mp4"
            written = 0
            with open(target, "wb") as fh:
                for chunk in response.iter_content(chunk_size=chunk_size):
                    fh.write(chunk)
                    written += len(chunk)
        return target, written

    def format_bytes(self, bytes_count):
        """Format bytes in human readable format"""
        for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
            if bytes_count < 1024:
                return f"{bytes_count:.1f} {unit}"
            bytes_count /= 1024
        return f"{bytes_count:.1f} PB"

    def print_channels(self, result):
        """Print a parsed playlist grouped by category"""
        groups = {}
        for channel in result["channels"]:
            groups.setdefault(channel["group"], []).append(channel)

        print("=" * 60)
        print(f"CHANNELS: {result['count']}")
        print("=" * 60)
        for group, channels in groups.items():
            print(f"{group} ({len(channels)})")
            print("-" * 60)
            for channel in channels:
                print(f"  {channel['title'] or '(untitled)'}")
                print(f"    URL: {channel['url'][:70]}")
                if channel.get("tvgId"):
                    print(f"    EPG id: {channel['tvgId']}")
            print()


def main(argv=None):
    parser = argparse.ArgumentParser(description="iptv-relay Client")
    parser.add_argument("--base-url", default="http://localhost:5000",
                        help="Base URL of the relay server")
    parser.add_argument("--json", action="store_true",
                        help="Print raw JSON instead of a channel listing")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("health", help="Check health")

    fetch_parser = subparsers.add_parser("fetch", help="Parse a remote playlist")
    fetch_parser.add_argument("url", help="Playlist URL")

    upload_parser = subparsers.add_parser("upload", help="Upload a playlist file")
    upload_parser.add_argument("path", help="Playlist file")

    text_parser = subparsers.add_parser("text", help="Send a playlist file as text")
    text_parser.add_argument("path", help="Playlist file")

    check_parser = subparsers.add_parser("check", help="Check if a stream is alive")
    check_parser.add_argument("url", help="Stream URL")

    epg_parser = subparsers.add_parser("epg", help="Fetch an EPG document")
    epg_parser.add_argument("url", help="EPG URL")
    epg_parser.add_argument("-o", "--output", default="epg.xml", help="Output file")

    download_parser = subparsers.add_parser("download", help="Download a file through the relay")
    download_parser.add_argument("url", help="File URL")
    download_parser.add_argument("--filename", help="Name requested from the relay")
    download_parser.add_argument("-o", "--output", help="Output file")

    args = parser.parse_args(argv)

    client = IPTVRelayClient(args.base_url)

    try:
        if args.command == "health":
            print(json.dumps(client.get_health(), indent=2))

        elif args.command in ("fetch", "upload", "text"):
            if args.command == "fetch":
                result = client.fetch_playlist(args.url)
            elif args.command == "upload":
                result = client.upload_playlist(args.path)
            else:
                with open(args.path, encoding="utf-8", errors="replace") as fh:
                    result = client.parse_text(fh.read())
            if args.json:
                print(json.dumps(result, indent=2))
            else:
                client.print_channels(result)

        elif args.command == "check":
            print(json.dumps(client.check_stream(args.url), indent=2))

        elif args.command == "epg":
            size = client.fetch_epg(args.url, args.output)
            print(f"Saved EPG to {args.output} ({client.format_bytes(size)})")

        elif args.command == "download":
            target, written = client.download(args.url, args.output, args.filename)
            print(f"Saved {target} ({client.format_bytes(written)})")

        else:
            parser.print_help()
            return 2

    except requests.RequestException as e:
        print(f"Error: {e}")
        return 1
    except OSError as e:
        print(f"File error: {e}")
        return 1

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
