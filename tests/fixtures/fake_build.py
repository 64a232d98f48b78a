"""Stand-in for a build tool.

Usage: fake_build.py <package>

Behaviour is selected with FAKE_BUILD_MODE:
  succeed     print progress, create out/<package>.vst3/ bundle, exit 0
  fail        print a rustc style error on stderr, exit 101
  noartifact  print progress, exit 0 without producing anything
  hang        print progress, then sleep
  dirty       exit 1 if the file named by FAKE_BUILD_FORBIDDEN exists
  check       fail like rustc if src/lib.rs calls compile_error!, else succeed
"""

import os
import sys
import time


def main():
    package = sys.argv[1] if len(sys.argv) > 1 else "plugin"
    mode = os.environ.get("FAKE_BUILD_MODE", "succeed")

    print(f"   Compiling {package} v0.1.0")
    print(f"suffix={os.environ.get('FAKE_BUILD_SUFFIX', '')}")
    sys.stdout.flush()

    if mode == "fail":
        sys.stderr.write("error[E0308]: mismatched types\n")
        sys.stderr.write("  --> src/lib.rs:4:5\n")
        sys.stderr.write("   |\n")
        sys.stderr.write("4  |     let x: u32 = \"text\";\n")
        sys.stderr.write("\n")
        sys.stderr.write("error: could not compile `plugin` due to previous error\n")
        sys.stderr.flush()
        sys.exit(101)

    if mode == "hang":
        time.sleep(600)

    if mode == "check":
        with open(os.path.join("src", "lib.rs")) as f:
            for number, line in enumerate(f, 1):
                if "compile_error!" in line and not line.lstrip().startswith("//"):
                    sys.stderr.write(f"error: {line.strip()}\n")
                    sys.stderr.write(f"  --> src/lib.rs:{number}:1\n")
                    sys.exit(101)

    if mode == "dirty":
        forbidden = os.environ.get("FAKE_BUILD_FORBIDDEN", "")
        if forbidden and os.path.exists(forbidden):
            sys.stderr.write(f"error: unexpected file {forbidden}\n")
            sys.exit(1)

    if mode in ("succeed", "dirty", "check"):
        bundle = os.path.join("out", f"{package}.vst3", "Contents")
        os.makedirs(bundle, exist_ok=True)
        with open(os.path.join(bundle, "plugin.so"), "w") as f:
            f.write("binary")

    print("    Finished release target(s)")


if __name__ == "__main__":
    main()
