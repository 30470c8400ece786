import sys

from lecture_attendance.cli import main

if __name__ == "__main__":
    sys.exit(main())
