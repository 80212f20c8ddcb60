"""Enrich an MLS spreadsheet from the command line.

Usage:
    python3 scripts/process_file.py listings.xlsx
    python3 scripts/process_file.py --resume
    python3 scripts/process_file.py --export-partial partial.xlsx
    python3 scripts/process_file.py --discard

Ctrl+C stops after the current batch; the progress snapshot can then be
resumed or exported.
"""
import argparse
import asyncio
import signal
from pathlib import Path

from mls_geo.errors import PipelineError
from mls_geo.pipeline.processor import create_processor
from mls_geo.services.spreadsheet_service import read_spreadsheet, write_results


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Enrich MLS listings with coordinates and neighborhoods")
    parser.add_argument("file", nargs="?", help="Input .xlsx or .csv file")
    parser.add_argument("--user", default=None, help="User id that owns the progress snapshot")
    parser.add_argument("--output", default=None, help="Where to write the results workbook")
    action = parser.add_mutually_exclusive_group()
    action.add_argument("--resume", action="store_true", help="Resume the saved run")
    action.add_argument("--discard", action="store_true", help="Delete the saved run")
    action.add_argument("--export-partial", metavar="PATH", help="Write the saved partial results")
    args = parser.parse_args(argv)
    if not (args.file or args.resume or args.discard or args.export_partial):
        parser.error("an input file or one of --resume/--discard/--export-partial is required")
    return args


async def main(argv=None) -> int:
    args = parse_args(argv)
    processor = create_processor()

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, processor.stop)
    except NotImplementedError:
        pass

    queue = processor.subscribe()

    async def report():
        while True:
            update = await queue.get()
            s = update.stats
            print(
                f"[{update.percentage:3d}%] {update.current}/{update.total} "
                f"success={s.successes} cached={s.cached} errors={s.errors} "
                f"rate={s.throughput:.1f}/s eta={s.eta_seconds or 0:.0f}s"
            )

    reporter = asyncio.create_task(report())
    try:
        if args.discard:
            await processor.discard(args.user)
            print("Saved progress discarded")
            return 0

        if args.export_partial:
            path = await processor.export_partial(args.export_partial, user_id=args.user)
            print(f"Partial results written to {path}")
            return 0

        if args.resume:
            snapshot = await processor.check_for_snapshot(args.user)
            if snapshot is None:
                print("No saved progress to resume")
                return 1
            results = await processor.resume(args.user)
        else:
            snapshot = await processor.check_for_snapshot(args.user)
            if snapshot is not None:
                print(
                    f"Note: discarding saved progress for {snapshot.file_name} "
                    f"({snapshot.cursor}/{snapshot.total_records})"
                )
            headers, records = read_spreadsheet(args.file)
            file_name = Path(args.file).name
            results = await processor.start(
                records,
                headers=headers,
                file_name=file_name,
                user_id=args.user,
            )
    except PipelineError as e:
        print(f"Error [{e.error_code}]: {e}")
        return 1
    finally:
        reporter.cancel()
        await processor.close()

    total = processor.progress().total
    if len(results) < total:
        print(f"\nStopped at {len(results)}/{total}. Use --resume or --export-partial.")
        return 2

    if not results:
        print("\nNothing to process: the file has no data rows")
        return 0

    sink_result = processor.last_sink_result
    if args.output:
        location = str(write_results(results, args.output))
    elif sink_result is not None and sink_result.success:
        location = sink_result.location_ref
    else:
        error = sink_result.error if sink_result else "no output configured"
        print(f"\nDelivery failed: {error}. Use --resume to retry or --output to write locally.")
        return 1

    stats = processor.stats
    print(
        f"\nDone! {stats.processed} rows: {stats.successes} geocoded, "
        f"{stats.cached} cached, {stats.errors} failed -> {location}"
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(asyncio.run(main()))
