import argparse
import subprocess
import sys
import time
from datetime import datetime


def run_once(passthrough):
    # Output is captured and echoed once the run exits; logging goes to stderr
    result = subprocess.run(
        [sys.executable, "-u", "-m", "stakerecon.pipeline", *passthrough],
        capture_output=True,
        text=True,
    )

    if result.stderr.strip():
        print(result.stderr.strip(), file=sys.stderr)
    if result.stdout.strip():
        print(result.stdout.strip())
    if result.returncode == 0:
        print("[recon] Run passed.")
    elif result.returncode == 1:
        print("[recon] Run failed: mismatch threshold exceeded or checks errored.")
    else:
        print(f"[recon] Run errored with return code {result.returncode}")
    return result.returncode


def main():
    parser = argparse.ArgumentParser(description="Rerun the stake reconciliation on an interval")
    parser.add_argument("--interval", type=int, default=3600, help="Seconds between runs")
    args, passthrough = parser.parse_known_args()

    print("Starting continuous reconciliation")
    print("Press Ctrl+C to stop.")

    while True:
        try:
            start_time = datetime.now()
            print(f"\n[recon] Starting run at {start_time.strftime('%Y-%m-%d %H:%M:%S')}...")
            run_once(passthrough)

            print(f"[recon] Sleeping for {args.interval} seconds...")
            time.sleep(args.interval)

        except KeyboardInterrupt:
            print("\n[recon] Stopping continuous reconciliation.")
            break
        except OSError as e:
            print(f"\n[recon] Could not start run: {e}")
            time.sleep(10)


if __name__ == "__main__":
    main()
