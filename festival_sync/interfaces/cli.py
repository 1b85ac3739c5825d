import argparse
import json
import logging
import signal
import sys
import time
from typing import List, Optional

from dotenv import load_dotenv

from festival_sync.crosscutting.config import ConfigError, get_config_manager
from festival_sync.crosscutting.logging import setup_logging
from festival_sync.domain.candidates import extract_candidates
from festival_sync.domain.errors import OcrError
from festival_sync.infrastructure.providers.vision import VisionTextDetector


class CLI:
    """Command Line Interface for Festival Sync."""

    def __init__(self):
        """Initialize CLI."""
        # .env is loaded in run() so constructing the parser stays side-effect free
        self.parser = self._create_parser()
        self._start_time = None

    def _create_parser(self) -> argparse.ArgumentParser:
        """Create argument parser."""
        parser = argparse.ArgumentParser(
            prog='festival-sync',
            description='Match festival lineup posters against your Spotify playlists'
        )
        parser.add_argument(
            '--log-level',
            choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
            default='WARNING',
            help='Set logging level'
        )

        subparsers = parser.add_subparsers(dest='command', help='Available commands')

        serve_parser = subparsers.add_parser('serve', help='Run the HTTP server')
        serve_parser.add_argument('--host', default='localhost', help='Interface to bind (default: localhost)')
        serve_parser.add_argument('--port', type=int, default=3000, help='Port to listen on (default: 3000)')
        serve_parser.add_argument('--debug', action='store_true', help='Run Flask in debug mode')

        extract_parser = subparsers.add_parser('extract', help='Extract candidate artist names from text')
        extract_parser.add_argument('file', help="Text file to read, or '-' for stdin")
        extract_parser.add_argument('--json', action='store_true', help='Print candidates as a JSON list')

        ocr_parser = subparsers.add_parser('ocr', help='Run OCR on a poster image and extract candidates')
        ocr_parser.add_argument('image', help='Image file to analyse')
        ocr_parser.add_argument('--json', action='store_true', help='Print text and candidates as JSON')

        subparsers.add_parser('config', help='Show configuration summary')

        return parser

    def _setup_signal_handlers(self) -> None:
        """Setup signal handlers for graceful shutdown."""
        def signal_handler(signum, frame):
            logger = logging.getLogger(__name__)
            logger.warning(f"Received signal {signum}, shutting down...")
            sys.exit(130)  # Standard exit code for signal termination

        signal.signal(signal.SIGTERM, signal_handler)

    def _read_text(self, path: str) -> str:
        if path == '-':
            return sys.stdin.read()
        with open(path, 'r', encoding='utf-8', errors='replace') as f:
            return f.read()

    def _print_candidates(self, candidates: List[str], as_json: bool, text: Optional[str] = None) -> None:
        if as_json:
            payload = candidates if text is None else {'text': text, 'candidates': candidates}
            print(json.dumps(payload, ensure_ascii=False, indent=2))
            return
        for name in candidates:
            print(name)

    def _extract(self, args: argparse.Namespace) -> None:
        """Extract candidates from a text file."""
        noise_rule = get_config_manager().get_noise_rule()
        candidates = extract_candidates(self._read_text(args.file), noise_rule)
        self._print_candidates(candidates, args.json)

    def _ocr(self, args: argparse.Namespace) -> None:
        """Detect text in an image with Google Cloud Vision, then extract candidates."""
        config = get_config_manager()
        with open(args.image, 'rb') as f:
            image_bytes = f.read()

        detector = VisionTextDetector(
            credentials_json=config.get_vision_credentials_json(),
            key_file=config.get_vision_key_file(),
        )
        text = detector.detect_text(image_bytes)
        candidates = extract_candidates(text, config.get_noise_rule())
        if args.json:
            self._print_candidates(candidates, True, text=text)
        else:
            if not text:
                print("No text detected.", file=sys.stderr)
            self._print_candidates(candidates, False)

    def _show_config(self, args: argparse.Namespace) -> None:
        """Print configuration summary without secrets."""
        print(json.dumps(get_config_manager().get_config_summary(), indent=2))

    def _serve(self, args: argparse.Namespace) -> None:
        # Imported here so the text-only commands do not pull in Flask
        from festival_sync.interfaces.http import HTTPServer

        server = HTTPServer(host=args.host, port=args.port, debug=args.debug)
        server.run()

    def run(self, argv: Optional[List[str]] = None) -> None:
        """Run the CLI."""
        self._start_time = time.time()
        load_dotenv()

        args = self.parser.parse_args(argv)
        if not args.command:
            self.parser.print_help()
            sys.exit(2)

        setup_logging(args.log_level)
        self._setup_signal_handlers()
        logger = logging.getLogger(__name__)

        handlers = {
            'serve': self._serve,
            'extract': self._extract,
            'ocr': self._ocr,
            'config': self._show_config,
        }

        try:
            handlers[args.command](args)
        except KeyboardInterrupt:
            logger.warning("Operation cancelled by user")
            sys.exit(130)
        except (ConfigError, OcrError, OSError) as e:
            logger.error(f"{args.command} failed: {e}")
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)
        finally:
            logger.debug(f"CLI execution time: {time.time() - self._start_time:.2f}s")


def main():
    """Main entry point."""
    cli = CLI()
    cli.run()


if __name__ == '__main__':
    main()
