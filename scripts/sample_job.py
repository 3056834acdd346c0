import sys
import datetime
import time


def main():
    print(f"[{datetime.datetime.now()}] Starting sample job...")
    time.sleep(1)
    print("Info: sample job writes to stderr too.", file=sys.stderr)
    print(f"[{datetime.datetime.now()}] Sample job completed.")
    sys.exit(0)


if __name__ == "__main__":
    main()
