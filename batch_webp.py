#!/usr/bin/env python3
"""
WebpCrunch
Converts a single image, or every image under a folder, to WebP.
Bounded parallelism: one worker thread per image, at most N converting at once.
Preserves EXIF metadata and ICC profiles. Progress bar for batch runs.
"""

import argparse
import os
import stat
import sys
import threading
import time
from dataclasses import dataclass
from pathlib import Path

from PIL import Image
import piexif
from tqdm import tqdm

# ── ANSI Colors ──────────────────────────────────────────────────────────────

class Color:
    """ANSI color codes. Auto-disabled when not writing to a TTY."""
    _enabled = sys.stdout.isatty()

    BOLD    = '\033[1m'   if _enabled else ''
    DIM     = '\033[2m'   if _enabled else ''
    GREEN   = '\033[92m'  if _enabled else ''
    RED     = '\033[91m'  if _enabled else ''
    YELLOW  = '\033[93m'  if _enabled else ''
    CYAN    = '\033[96m'  if _enabled else ''
    RESET   = '\033[0m'   if _enabled else ''

C = Color

# ── Configuration ────────────────────────────────────────────────────────────

DEFAULT_QUALITY = 90            # Lossy quality, 0-100
DEFAULT_METHOD = 4              # libwebp effort, 0 (fast) - 6 (slowest, smallest)
OUTPUT_EXTENSION = '.webp'
SUPPORTED_EXTENSIONS = {'.jpg', '.jpeg', '.png', '.gif', '.bmp'}

# Steps a single conversion goes through; reported back on failure
STEP_OPEN = 'open'
STEP_DECODE = 'decode'
STEP_CREATE = 'create'
STEP_ENCODE = 'encode'
STEP_WORKER = 'worker'


def default_concurrency() -> int:
    """Number of images converted at once when the user does not pick one.

    Counts the CPUs this process may run on, not every CPU in the machine.
    """
    if hasattr(os, 'sched_getaffinity'):
        return len(os.sched_getaffinity(0)) or 1
    return os.cpu_count() or 1


@dataclass(frozen=True)
class WorkItem:
    """One image to convert. `index` is its position in discovery order."""
    source: Path
    destination: Path
    index: int


# ── Helpers ──────────────────────────────────────────────────────────────────

def format_bytes(size_bytes: int) -> str:
    """Human-readable file size."""
    for unit in ('B', 'KB', 'MB', 'GB'):
        if abs(size_bytes) < 1024:
            return f"{size_bytes:.1f} {unit}"
        size_bytes /= 1024
    return f"{size_bytes:.1f} TB"


def output_path_for(source: Path) -> Path:
    """photo.jpg -> photo.jpg.webp, next to the original."""
    return source.with_name(source.name + OUTPUT_EXTENSION)


def is_directory(path: Path) -> bool:
    """Batch mode for folders, single-image mode for anything else.

    Raises OSError when the path does not exist or cannot be stat'd.
    """
    return stat.S_ISDIR(os.stat(path).st_mode)


# ── Discovery ────────────────────────────────────────────────────────────────

def _raise_walk_error(error: OSError):
    raise error


def find_images(root: Path) -> list[WorkItem]:
    """Recursively find all supported image files under `root`.

    Directories and files are visited in sorted order, so the same tree always
    yields the same sequence. Any I/O error aborts the scan: a half-read
    folder is never returned.
    """
    root = Path(root)
    os.stat(root)

    items = []
    for dirpath, dirnames, filenames in os.walk(root, onerror=_raise_walk_error):
        dirnames.sort()
        for name in sorted(filenames):
            if os.path.splitext(name)[1].lower() not in SUPPORTED_EXTENSIONS:
                continue
            source = Path(dirpath) / name
            items.append(WorkItem(source, output_path_for(source), len(items)))
    return items


# ── Core Image Processing ───────────────────────────────────────────────────

def _failed(result: dict, step: str, error: Exception) -> dict:
    result['step'] = step
    result['error'] = f"{type(error).__name__}: {error}"
    return result


def extract_exif(img: Image.Image) -> bytes | None:
    """EXIF block ready for the WebP container, without the embedded thumbnail."""
    raw = img.info.get('exif')
    if not raw:
        return None
    try:
        exif_dict = piexif.load(raw)
        exif_dict['thumbnail'] = None
        exif_dict['1st'] = {}
        return piexif.dump(exif_dict)
    except Exception:
        # Broken EXIF is dropped, the image still converts
        return None


def normalize_mode(img: Image.Image) -> Image.Image:
    """WebP only stores RGB and RGBA. Alpha is added only if the source has it."""
    if img.mode == 'P':
        return img.convert('RGBA' if 'transparency' in img.info else 'RGB')
    if img.mode in ('RGBA', 'LA', 'PA'):
        return img.convert('RGBA')
    if img.mode != 'RGB':
        return img.convert('RGB')
    return img


def convert_to_webp(source: Path, destination: Path, quality: int,
                    lossless: bool = False, method: int = DEFAULT_METHOD) -> dict:
    """Convert a single image to WebP.

    Never raises for a bad image: the returned dict has `error` set and `step`
    naming where it broke (open, decode, create or encode). Safe to call from
    many threads at once as long as the paths differ.
    """
    source = Path(source)
    destination = Path(destination)
    result = {
        'input': str(source),
        'output': str(destination),
        'quality': quality,
        'lossless': lossless,
        'input_bytes': 0,
        'output_bytes': 0,
        'size': None,
        'step': None,
        'error': None,
    }

    try:
        src = open(source, 'rb')
    except OSError as e:
        return _failed(result, STEP_OPEN, e)

    with src:
        try:
            decoded = Image.open(src)
            decoded.load()
        except Exception as e:
            return _failed(result, STEP_DECODE, e)
        result['input_bytes'] = os.fstat(src.fileno()).st_size

    with decoded:
        exif_bytes = extract_exif(decoded)
        icc_profile = decoded.info.get('icc_profile')
        # Animated GIFs keep only their first frame
        try:
            img = normalize_mode(decoded)
        except Exception as e:
            return _failed(result, STEP_DECODE, e)
        result['size'] = img.size

        save_kwargs = {'lossless': lossless, 'method': method}
        if not lossless:
            save_kwargs['quality'] = quality
        if exif_bytes:
            save_kwargs['exif'] = exif_bytes
        # A profile only describes the pixels it came with
        if icc_profile and img.mode == decoded.mode:
            save_kwargs['icc_profile'] = icc_profile

        try:
            out = open(destination, 'wb')
        except OSError as e:
            return _failed(result, STEP_CREATE, e)

        try:
            with out:
                img.save(out, 'WEBP', **save_kwargs)
        except Exception as e:
            destination.unlink(missing_ok=True)
            return _failed(result, STEP_ENCODE, e)

    result['output_bytes'] = destination.stat().st_size
    return result


def convert_single(path: Path, quality: int, lossless: bool = False,
                   method: int = DEFAULT_METHOD) -> dict:
    """Single-image mode: no discovery, no dispatcher."""
    path = Path(path)
    item = WorkItem(path, output_path_for(path), 0)
    return convert_to_webp(item.source, item.destination, quality, lossless, method)


# ── Dispatcher ───────────────────────────────────────────────────────────────

class CompletionGroup:
    """Counts outstanding tasks; `wait()` blocks until every one called `done()`."""

    def __init__(self):
        self._cond = threading.Condition()
        self._pending = 0

    @property
    def pending(self) -> int:
        with self._cond:
            return self._pending

    def add(self, n: int = 1):
        with self._cond:
            if self._pending + n < 0:
                raise ValueError('negative pending count')
            self._pending += n
            if self._pending == 0:
                self._cond.notify_all()

    def done(self):
        with self._cond:
            if self._pending == 0:
                raise ValueError('done() called more times than add()')
            self._pending -= 1
            if self._pending == 0:
                self._cond.notify_all()

    def wait(self):
        with self._cond:
            self._cond.wait_for(lambda: self._pending == 0)


def _worker_failure(item, error: Exception) -> dict:
    return _failed({
        'input': str(item.source),
        'output': str(item.destination),
        'step': None,
        'error': None,
    }, STEP_WORKER, error)


def dispatch(items, worker, limit: int, on_start=None, on_finish=None) -> dict:
    """Run `worker(item)` for every item, at most `limit` at a time.

    Every item gets its own thread immediately; only the call to `worker` is
    gated by a semaphore of `limit` slots. A slot is released on every exit
    path, so a failing item never starves the others. Returns once all items
    have finished, mapping each item to its result. An exception escaping
    `worker` or `on_start` is recorded as that item's failure. If the OS
    refuses to start another thread, that item and every later one are
    recorded as failed without being attempted.

    `on_start(item, total)` runs once a slot is held, `on_finish(item, result)`
    after the slot is released. Both are called from worker threads, except
    `on_finish` for items whose thread could not be started.
    """
    items = list(items)
    total = len(items)
    if not items:
        return {}

    slots = threading.BoundedSemaphore(max(1, limit))
    group = CompletionGroup()
    outcomes = [None] * total

    def run(position, item):
        try:
            with slots:
                try:
                    if on_start:
                        on_start(item, total)
                    outcome = worker(item)
                except Exception as e:
                    outcome = _worker_failure(item, e)
            outcomes[position] = outcome
            if on_finish:
                on_finish(item, outcome)
        finally:
            group.done()

    for position, item in enumerate(items):
        group.add()
        thread = threading.Thread(target=run, args=(position, item),
                                  name=f'webp-{position}', daemon=True)
        try:
            thread.start()
        except RuntimeError as e:
            group.done()
            for skipped in range(position, total):
                outcomes[skipped] = _worker_failure(items[skipped], e)
                if on_finish:
                    on_finish(items[skipped], outcomes[skipped])
            break

    group.wait()
    return {item: outcomes[position] for position, item in enumerate(items)}


# ── Progress Output ──────────────────────────────────────────────────────────

class ProgressReporter:
    """Thread-safe console output for a batch run."""

    def __init__(self, total: int, enabled: bool = True):
        self.total = total
        self._lock = threading.Lock()
        self._bar = None
        if enabled and total:
            self._bar = tqdm(
                total=total,
                desc=f"  {C.CYAN}Converting{C.RESET}",
                unit='img',
                bar_format=f"  {{l_bar}}{C.GREEN}{{bar}}{C.RESET} {{n_fmt}}/{{total_fmt}} [{{elapsed}}<{{remaining}}, {{rate_fmt}}]",
                ncols=80,
            )
        self.stats = {
            'processed': 0, 'errors': 0,
            'total_input_bytes': 0, 'total_output_bytes': 0,
        }

    def _emit(self, msg: str, err: bool = False):
        if self._bar is not None:
            tqdm.write(msg, file=sys.stderr if err else sys.stdout)
        else:
            print(msg, file=sys.stderr if err else sys.stdout)

    def started(self, item: WorkItem, total: int):
        with self._lock:
            self._emit(f"  {C.DIM}[{item.index + 1}/{total}] Converting {item.source}{C.RESET}")

    def finished(self, item: WorkItem, result: dict):
        with self._lock:
            if result['error']:
                self.stats['errors'] += 1
                self._emit(f"  {C.RED}✗{C.RESET} {item.source} ({result['step']}): {result['error']}", err=True)
            else:
                self.stats['processed'] += 1
                self.stats['total_input_bytes'] += result['input_bytes']
                self.stats['total_output_bytes'] += result['output_bytes']
                self._emit(f"  {C.GREEN}✓{C.RESET} {success_notice(result)}")
            if self._bar is not None:
                self._bar.update(1)

    def close(self):
        if self._bar is not None:
            self._bar.close()


def success_notice(result: dict) -> str:
    setting = 'lossless' if result['lossless'] else f"quality {result['quality']}"
    return f"Converted to {result['output']} ({setting})"


# ── Summary Table ────────────────────────────────────────────────────────────

def print_summary(stats: dict, elapsed: float):
    """Print a styled summary table after processing."""
    print()
    print(f"{C.CYAN}{'═' * 52}{C.RESET}")
    print(f"{C.BOLD}  📊  Conversion Summary{C.RESET}")
    print(f"{C.CYAN}{'═' * 52}{C.RESET}")

    processed = stats['processed']
    errors = stats['errors']
    total_in = stats['total_input_bytes']
    total_out = stats['total_output_bytes']

    print(f"  {C.BOLD}Images converted:{C.RESET}  {C.GREEN}{processed}{C.RESET}")
    if errors > 0:
        print(f"  {C.BOLD}Errors:{C.RESET}            {C.RED}{errors}{C.RESET}")

    print(f"{C.DIM}{'─' * 52}{C.RESET}")

    if total_in > 0 and total_out > 0:
        saved_pct = (1 - total_out / total_in) * 100
        arrow = '↓' if saved_pct > 0 else '↑'
        color = C.GREEN if saved_pct > 0 else C.RED
        print(f"  {C.BOLD}Input size:{C.RESET}        {format_bytes(total_in)}")
        print(f"  {C.BOLD}Output size:{C.RESET}       {format_bytes(total_out)}")
        print(f"  {C.BOLD}Savings:{C.RESET}           {color}{arrow} {abs(saved_pct):.1f}%{C.RESET}  ({format_bytes(abs(total_in - total_out))})")

    minutes, seconds = divmod(elapsed, 60)
    if minutes > 0:
        time_str = f"{int(minutes)}m {seconds:.1f}s"
    else:
        time_str = f"{seconds:.1f}s"
    print(f"  {C.BOLD}Time elapsed:{C.RESET}      {time_str}")

    if processed > 0 and elapsed > 0:
        speed = processed / elapsed
        print(f"  {C.BOLD}Speed:{C.RESET}             {speed:.1f} images/sec")

    print(f"{C.CYAN}{'═' * 52}{C.RESET}")

    if errors > 0:
        print(f"\n  {C.YELLOW}⚠️  {errors} file(s) could not be converted{C.RESET}")


# ── Main ─────────────────────────────────────────────────────────────────────

def _bounded_int(low: int, high: int | None = None):
    def parse(value: str) -> int:
        try:
            number = int(value)
        except ValueError:
            raise argparse.ArgumentTypeError(f'{value!r} is not an integer')
        if number < low or (high is not None and number > high):
            upper = high if high is not None else '∞'
            raise argparse.ArgumentTypeError(f'{number} is outside {low}-{upper}')
        return number
    return parse


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='batch-webp',
        description='Convert an image, or every image in a folder, to WebP.',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  batch-webp photo.jpg                  → photo.jpg.webp
  batch-webp /path/to/images -q 80
  batch-webp /path/to/images -t 4 --lossless
        """
    )
    parser.add_argument('input', nargs='?', help='Image file or folder containing images')
    parser.add_argument('-i', '--input', dest='input_option', metavar='INPUT',
                        help='Same as the positional INPUT')
    parser.add_argument('-q', '--quality', type=_bounded_int(0, 100), default=DEFAULT_QUALITY,
                        help=f'Quality 0-100 (default: {DEFAULT_QUALITY})')
    parser.add_argument('-t', '--threads', type=_bounded_int(0), default=0,
                        help='Images converted at once, 0 = number of CPUs (default: 0)')
    parser.add_argument('--lossless', action='store_true',
                        help='Lossless WebP (quality is ignored)')
    parser.add_argument('-m', '--method', type=_bounded_int(0, 6), default=DEFAULT_METHOD,
                        help=f'Encoder effort 0-6 (default: {DEFAULT_METHOD})')
    parser.add_argument('--no-progress', action='store_true',
                        help='Plain line output instead of a progress bar')
    parser.add_argument('--strict', action='store_true',
                        help='Exit with status 2 if any image failed')
    return parser


def print_banner(args, input_path: Path, batch: bool, workers: int):
    print()
    print(f"  {C.BOLD}Input:{C.RESET}           {input_path}")
    print(f"  {C.BOLD}Mode:{C.RESET}            {'folder' if batch else 'single image'}")
    if args.lossless:
        print(f"  {C.BOLD}Quality:{C.RESET}         {C.CYAN}lossless{C.RESET}")
    else:
        print(f"  {C.BOLD}Quality:{C.RESET}         {args.quality}")
    if batch:
        print(f"  {C.BOLD}Workers:{C.RESET}         {workers}")
    print(f"{C.DIM}{'─' * 60}{C.RESET}")


def run_single(args, input_path: Path) -> int:
    result = convert_single(input_path, args.quality, args.lossless, args.method)
    if result['error']:
        print(f"{C.RED}Error ({result['step']}): {input_path}: {result['error']}{C.RESET}", file=sys.stderr)
        return 1
    print(f"  {C.GREEN}✓{C.RESET} {success_notice(result)}")
    return 0


def run_batch(args, input_path: Path, workers: int) -> int:
    try:
        items = find_images(input_path)
    except OSError as e:
        print(f"{C.RED}Error: could not scan {input_path}: {e}{C.RESET}", file=sys.stderr)
        return 1

    if not items:
        print(f"{C.YELLOW}No images found!{C.RESET}")
        return 0

    print(f"  Found {C.BOLD}{len(items)}{C.RESET} images\n")

    reporter = ProgressReporter(len(items), enabled=not args.no_progress)
    start_time = time.time()
    try:
        dispatch(
            items,
            lambda item: convert_to_webp(item.source, item.destination,
                                         args.quality, args.lossless, args.method),
            workers,
            on_start=reporter.started,
            on_finish=reporter.finished,
        )
    finally:
        reporter.close()
    elapsed = time.time() - start_time

    print_summary(reporter.stats, elapsed)
    if args.strict and reporter.stats['errors']:
        return 2
    return 0


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    raw_input = args.input_option or args.input
    if not raw_input:
        parser.error('an input file or folder is required')
    input_path = Path(raw_input).expanduser()

    try:
        batch = is_directory(input_path)
    except OSError as e:
        print(f"{C.RED}Error: {e}{C.RESET}", file=sys.stderr)
        return 1

    workers = args.threads or default_concurrency()
    print_banner(args, input_path, batch, workers)

    if batch:
        return run_batch(args, input_path, workers)
    return run_single(args, input_path)


if __name__ == '__main__':
    sys.exit(main())
