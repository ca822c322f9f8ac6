"""
log_tail.py - Log Aggregator

Follows several append-only log files at once and forwards their lines
to one output stream, like `tail -f log1.txt log2.txt`.

- Lines from one file keep their order; files are interleaved in
  arrival order (no timestamp merging across files)
- Incomplete trailing lines stay buffered until their newline arrives
- Files that do not exist yet are waited for
- A file that shrinks (truncated) is re-read from the start

The aggregator never stops on its own. It runs until the stop event is
set or a signal handler unwinds the main loop.
"""

import sys
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Iterator, List, Optional, Sequence, Union


@dataclass
class LogLine:
    """One line of node output."""
    source: str
    text: str


class FollowedFile:
    """Read position and partial-line buffer for one log file."""

    def __init__(self, path: Path):
        self.path = path
        self.position = 0
        self.buffer = b''

    def read_new(self) -> bytes:
        """Bytes appended since the last read."""
        try:
            size = self.path.stat().st_size
        except FileNotFoundError:
            return b''

        if size < self.position:
            # Truncated underneath us
            self.position = 0
            self.buffer = b''

        if size == self.position:
            return b''

        with open(self.path, 'rb') as f:
            f.seek(self.position)
            data = f.read()
            self.position = f.tell()
        return data

    def read_lines(self) -> List[str]:
        """Complete lines appended since the last read."""
        data = self.read_new()
        if not data:
            return []

        self.buffer += data
        *complete, self.buffer = self.buffer.split(b'\n')
        return [self._decode(line) for line in complete]

    def flush_partial(self) -> Optional[str]:
        """Return and clear the buffered incomplete line, if any."""
        if not self.buffer:
            return None
        text = self._decode(self.buffer)
        self.buffer = b''
        return text

    @staticmethod
    def _decode(raw: bytes) -> str:
        return raw.decode('utf-8', errors='replace').rstrip('\r')


class LogAggregator:
    """
    Combined tail of the node log files.

    Usage:
        aggregator = LogAggregator(['log1.txt', 'log2.txt'])
        aggregator.run()  # blocks until stop_event is set or a signal arrives
    """

    def __init__(self, paths: Sequence[Union[str, Path]], output: Optional[IO[str]] = None,
                 poll_interval_s: float = 0.1):
        self.files = [FollowedFile(Path(p)) for p in paths]
        self.output = output if output is not None else sys.stdout
        self.poll_interval_s = poll_interval_s

    def follow(self, stop_event: Optional[threading.Event] = None) -> Iterator[LogLine]:
        """
        Yield lines as they are appended to any followed file.

        Unbounded: ends only once stop_event is set. Anything already
        written when the stop is noticed is still yielded, including a
        final line without a newline.
        """
        if stop_event is None:
            stop_event = threading.Event()

        while not stop_event.is_set():
            produced = False
            for followed in self.files:
                for text in followed.read_lines():
                    produced = True
                    yield LogLine(str(followed.path), text)

            if not produced:
                stop_event.wait(self.poll_interval_s)

        # Drain
        for followed in self.files:
            for text in followed.read_lines():
                yield LogLine(str(followed.path), text)
            partial = followed.flush_partial()
            if partial is not None:
                yield LogLine(str(followed.path), partial)

    def run(self, stop_event: Optional[threading.Event] = None) -> int:
        """
        Forward lines to the output stream until stopped.

        A `==> path <==` header is written whenever the source changes.

        Returns:
            Number of lines forwarded
        """
        count = 0
        last_source = None

        for line in self.follow(stop_event):
            if line.source != last_source:
                if last_source is not None:
                    self.output.write('\n')
                self.output.write(f"==> {line.source} <==\n")
                last_source = line.source

            self.output.write(line.text + '\n')
            self.output.flush()
            count += 1

        return count
