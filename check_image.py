#!/usr/bin/env python3
import argparse
import os
import shutil
import subprocess
import sys
from datetime import datetime

HERE = os.path.dirname(os.path.abspath(__file__))

def find_tool(*names):
    for name in names:
        path = shutil.which(name)
        if path:
            return path
    print(f"ERROR: cannot find {' or '.join(names)} in PATH", file=sys.stderr)
    sys.exit(1)

def run(cmd, **kwargs):
    print(" ".join(cmd))
    subprocess.run(cmd, check=True, **kwargs)

def run_logged(cmd, out, header):
    """Run a reader tool, echo its output and append it to the results file."""
    print(" ".join(cmd))
    with open(out, "a", encoding="utf-8") as f:
        for line in header:
            print(line)
            f.write(line + "\n")

        p = subprocess.Popen(cmd,
                             stdout=subprocess.PIPE,
                             stderr=subprocess.STDOUT,
                             text=True)
        for line in p.stdout:
            print(line, end="")
            f.write(line)
        p.wait()

        status = f"exit: {p.returncode}"
        print(status)
        f.write(status + "\n\n")
    return p.returncode

def main(argv=None):
    parser = argparse.ArgumentParser()
    parser.add_argument("--img", default=os.environ.get("IMG", "ext2-base.img"))
    parser.add_argument("--block-size", type=int, default=int(os.environ.get("BLOCK_SIZE", "1024")))
    parser.add_argument("--blocks", type=int, default=int(os.environ.get("BLOCKS", "1024")))
    parser.add_argument("--inodes", type=int, default=int(os.environ.get("INODES", "128")))
    parser.add_argument("--out", default=os.environ.get("OUT", "results.txt"))

    parser.add_argument("--do-image", action="store_true")
    parser.add_argument("--do-fsck", action="store_true")
    parser.add_argument("--do-ls", action="store_true")
    parser.add_argument("--clean", action="store_true")

    args = parser.parse_args(argv)

    do_image = args.do_image
    do_fsck  = args.do_fsck
    do_ls    = args.do_ls

    if not (do_image or do_fsck or do_ls):
        do_image = True
        do_fsck  = True
        do_ls    = True

    if do_image:
        print(f"[image] creating {args.img} ({args.blocks} x {args.block_size} bytes, {args.inodes} inodes)")
        run([sys.executable, os.path.join(HERE, "ext2_builder.py"),
             "--output", args.img,
             "--block-size", str(args.block_size),
             "--blocks", str(args.blocks),
             "--inodes", str(args.inodes)])

    if (do_fsck or do_ls) and not os.path.isfile(args.img):
        print(f"ERROR: image not found: {args.img} (run with --do-image first)", file=sys.stderr)
        sys.exit(1)

    header = [
        "-----",
        f"date: {datetime.now().isoformat(timespec='seconds')}",
        f"image: {args.img}",
        f"geometry: {args.blocks} x {args.block_size}, {args.inodes} inodes",
        "-----",
    ]

    failures = 0

    if do_fsck:
        fsck = find_tool("e2fsck", "fsck.ext2")
        print(f"[fsck] {fsck}")
        # -n: read-only, -f: check even though the image is marked clean
        if run_logged([fsck, "-f", "-n", args.img], args.out, header):
            failures += 1

    if do_ls:
        debugfs = find_tool("debugfs")
        print(f"[ls] {debugfs}")
        if run_logged([debugfs, "-R", "ls -l /", args.img], args.out, header):
            failures += 1

    if args.clean:
        print(f"[clean] removing {args.img}")
        try:
            os.remove(args.img)
        except FileNotFoundError:
            pass

    return 1 if failures else 0

if __name__ == "__main__":
    sys.exit(main())
