import argparse
import hashlib
import logging
import os
import sys
import threading
import time
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from shader_preprocessor_machine import (
    PreprocessorError,
    ShaderBuilder,
    ShaderValidationError,
    naga_validator,
)


def _utc_now() -> str:
    return datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S')


class BuildEvent:
    """Represents a build event with debouncing support"""
    def __init__(self):
        self.last_trigger = 0.0
        self.is_building = False
        self.needs_rebuild = False
        self.pending: Optional[threading.Timer] = None
        self.lock = threading.Lock()


class FileChangeHandler(FileSystemEventHandler):
    def __init__(self, source_dir: str, builder: ShaderBuilder, debounce_seconds: float = 0.5):
        self.source_dir = os.path.abspath(source_dir)
        self.build_dir = os.path.abspath(builder.build_dir)
        self.builder = builder
        self.debounce_seconds = debounce_seconds
        self.build_event = BuildEvent()
        self.file_hashes: Dict[str, str] = {}
        self.last_failures: List[tuple] = []

        self._update_file_hashes()

    def _update_file_hashes(self) -> None:
        """Update the hash of every shader in the source directory"""
        new_hashes = {}
        for root, dirs, files in os.walk(self.source_dir):
            dirs[:] = [d for d in dirs if not self._should_ignore(os.path.join(root, d), directory=True)]
            for file in files:
                filepath = os.path.join(root, file)
                if self._should_ignore(filepath):
                    continue
                try:
                    with open(filepath, 'rb') as f:
                        new_hashes[filepath] = hashlib.md5(f.read()).hexdigest()
                except OSError as e:
                    print(f"Error hashing file {filepath}: {e}")
        self.file_hashes = new_hashes

    def _has_file_changed(self, filepath: str) -> bool:
        """Check if a file has actually changed by comparing its hash"""
        try:
            with open(filepath, 'rb') as f:
                new_hash = hashlib.md5(f.read()).hexdigest()
        except OSError:
            return True  # Unreadable files count as changed
        return new_hash != self.file_hashes.get(filepath)

    def _should_ignore(self, filepath: str, directory: bool = False) -> bool:
        """Check if the path should be ignored"""
        filepath = os.path.abspath(filepath)
        if filepath == self.build_dir or filepath.startswith(self.build_dir + os.sep):
            return True
        if '.git' in filepath.split(os.sep):
            return True
        return not directory and not self.builder.is_shader(filepath)

    def _trigger_build(self) -> None:
        """Trigger a build with debouncing"""
        with self.build_event.lock:
            current_time = time.time()

            # A build is running, rebuild once it finishes
            if self.build_event.is_building:
                self.build_event.needs_rebuild = True
                return

            remaining = self.debounce_seconds - (current_time - self.build_event.last_trigger)
            if remaining > 0:
                self.build_event.needs_rebuild = True
                self._schedule_build(remaining)
                return

            self.build_event.is_building = True
            self.build_event.needs_rebuild = False
            self.build_event.last_trigger = current_time

        self._execute_build()

    def _schedule_build(self, delay: float) -> None:
        """Build once the debounce window closes; called with the lock held"""
        if self.build_event.pending is not None:
            return
        timer = threading.Timer(delay, self._run_scheduled_build)
        timer.daemon = True
        self.build_event.pending = timer
        timer.start()

    def _run_scheduled_build(self) -> None:
        with self.build_event.lock:
            self.build_event.pending = None
        self._trigger_build()

    def cancel_pending(self) -> None:
        """Drop a scheduled build that has not started yet"""
        with self.build_event.lock:
            if self.build_event.pending is not None:
                self.build_event.pending.cancel()
                self.build_event.pending = None

    def _execute_build(self) -> None:
        """Execute the build process"""
        try:
            print("\n" + "=" * 50)
            print(f"Building shaders at {_utc_now()} UTC")
            print("=" * 50)

            self.last_failures = self.builder.build(self.source_dir)
            self._update_file_hashes()

            if self.last_failures:
                print(f"Build finished with {len(self.last_failures)} failing shader(s)")
            else:
                print("Build completed successfully!")

        except (OSError, ValueError) as e:
            print(f"Build failed: {str(e)}")

        finally:
            with self.build_event.lock:
                self.build_event.is_building = False
                if self.build_event.needs_rebuild:
                    self.build_event.needs_rebuild = False
                    # Changes arrived during the build, rebuild once the window closes
                    threading.Thread(target=self._trigger_build).start()

    def _relpath(self, path: str) -> str:
        return os.path.relpath(path, self.source_dir)

    def on_modified(self, event):
        if event.is_directory or self._should_ignore(event.src_path):
            return

        if self._has_file_changed(event.src_path):
            print(f"\nFile changed: {self._relpath(event.src_path)}")
            self._trigger_build()

    def on_created(self, event):
        if event.is_directory or self._should_ignore(event.src_path):
            return

        print(f"\nFile created: {self._relpath(event.src_path)}")
        self._trigger_build()

    def on_deleted(self, event):
        if event.is_directory or self._should_ignore(event.src_path):
            return

        print(f"\nFile deleted: {self._relpath(event.src_path)}")
        self.file_hashes.pop(os.path.abspath(event.src_path), None)
        self._trigger_build()

    def on_moved(self, event):
        if event.is_directory:
            return
        if self._should_ignore(event.src_path) and self._should_ignore(event.dest_path):
            return

        print(f"\nFile moved/renamed: {self._relpath(event.src_path)} -> {self._relpath(event.dest_path)}")
        self._trigger_build()


class ShaderWatcher:
    def __init__(self, source_dir: str, builder: ShaderBuilder, debounce_seconds: float = 0.5):
        self.source_dir = os.path.abspath(source_dir)
        self.builder = builder
        self.debounce_seconds = debounce_seconds
        self.observer = Observer()

    def start(self) -> int:
        """Watch the source directory and rebuild until interrupted"""
        event_handler = FileChangeHandler(self.source_dir, self.builder, self.debounce_seconds)
        self.observer.schedule(event_handler, self.source_dir, recursive=True)

        print("Shader Watcher Started")
        print(f"{'=' * 50}")
        print(f"Watching directory: {self.source_dir}")
        print(f"Build directory: {os.path.abspath(self.builder.build_dir)}")
        print(f"Extensions: {', '.join(self.builder.extensions)}")
        print(f"UTC Time: {_utc_now()}")
        print(f"{'=' * 50}")

        event_handler._trigger_build()

        try:
            self.observer.start()
            while True:
                time.sleep(1)
        except KeyboardInterrupt:
            print("\nStopping watcher...")
        finally:
            event_handler.cancel_pending()
            self.observer.stop()
            self.observer.join()
        print("Watcher stopped.")
        return 0


def _build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Expand #include/#define/#undef directives in shader sources."
    )
    parser.add_argument("source", nargs="?", default=".",
                        help="shader file to print expanded, or directory to build")
    parser.add_argument("-o", "--build-dir", default="build", help="output directory for builds")
    parser.add_argument("--ext", dest="extensions", action="append", default=[],
                        help="shader file extension to process (default: .wgsl)")
    parser.add_argument("--validate", action="store_true", help="validate expanded shaders with naga")
    parser.add_argument("--naga", default="naga", help="naga executable used by --validate")
    parser.add_argument("--watch", action="store_true", help="rebuild when source files change")
    parser.add_argument("--debounce", type=float, default=0.5, help="seconds between rebuilds")
    parser.add_argument("-v", "--verbose", action="store_true", help="log include and macro activity")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _build_arg_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    builder = ShaderBuilder(
        build_dir=args.build_dir,
        extensions=tuple(args.extensions) or (".wgsl",),
        validator=naga_validator(args.naga) if args.validate else None,
    )

    if os.path.isfile(args.source):
        try:
            print(builder.process_file(args.source), end="")
        except (PreprocessorError, ShaderValidationError) as e:
            print(f"{args.source}: error: {str(e)}", file=sys.stderr)
            return 1
        return 0

    if not os.path.isdir(args.source):
        print(f"{args.source}: error: no such file or directory", file=sys.stderr)
        return 1

    try:
        builder.check_build_dir(args.source)
    except ValueError as e:
        print(f"{args.source}: error: {str(e)}", file=sys.stderr)
        return 1

    if args.watch:
        return ShaderWatcher(args.source, builder, args.debounce).start()

    print("Shader Preprocessor")
    print("==================================")
    try:
        failures = builder.build(args.source)
    except OSError as e:
        print(f"Fatal error: {str(e)}")
        return 1

    if failures:
        print(f"\n{len(failures)} shader(s) failed to build.")
        return 1
    print(f"\nShaders built successfully in '{builder.build_dir}' directory!")
    return 0


if __name__ == "__main__":
    sys.exit(main())
