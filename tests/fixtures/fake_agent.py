"""Stand-in for the agent CLI, emitting stream-json on stdout.

Behaviour is selected with FAKE_AGENT_MODE:
  edit        write FAKE_AGENT_FILE (default src/lib.rs) and finish
  noop        answer without touching files
  error       finish with an error result
  crash       print some text, then exit 3 without a result
  silent_eof  print some text, then exit 0 without a result
  malformed   like edit, with garbage lines mixed in
  hang        print some text, start a child process, then sleep
  slow        sleep FAKE_AGENT_DELAY seconds before any output

FAKE_AGENT_ARGV_FILE, when set, receives the argv as JSON.
"""

import json
import os
import subprocess
import sys
import time


def emit(record):
    sys.stdout.write(json.dumps(record) + "\n")
    sys.stdout.flush()


def prompt_from_argv(argv):
    if "-p" in argv:
        return argv[argv.index("-p") + 1]
    return ""


def main():
    argv = sys.argv[1:]
    if os.environ.get("FAKE_AGENT_ARGV_FILE"):
        with open(os.environ["FAKE_AGENT_ARGV_FILE"], "w") as f:
            json.dump(argv, f)

    mode = os.environ.get("FAKE_AGENT_MODE", "edit")
    prompt = prompt_from_argv(argv)
    session_id = os.environ.get("FAKE_AGENT_SESSION", "session-1")

    if mode == "slow":
        time.sleep(float(os.environ.get("FAKE_AGENT_DELAY", "30")))

    emit({"type": "system", "subtype": "init", "session_id": session_id, "tools": ["Write"]})
    emit(
        {
            "type": "assistant",
            "session_id": session_id,
            "message": {"content": [{"type": "text", "text": "Working on it."}]},
        }
    )

    if mode == "crash":
        sys.stderr.write("panic: something went wrong\n")
        sys.stderr.flush()
        sys.exit(3)

    if mode == "silent_eof":
        sys.exit(0)

    if mode == "hang":
        child = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(600)"])
        emit(
            {
                "type": "assistant",
                "session_id": session_id,
                "message": {"content": [{"type": "text", "text": f"child {child.pid}"}]},
            }
        )
        time.sleep(600)
        sys.exit(0)

    if mode == "error":
        emit(
            {
                "type": "result",
                "subtype": "error_max_turns",
                "is_error": True,
                "session_id": session_id,
            }
        )
        return

    if mode in ("edit", "malformed"):
        relative = os.environ.get("FAKE_AGENT_FILE", "src/lib.rs")
        target = os.path.join(os.getcwd(), relative)
        os.makedirs(os.path.dirname(target), exist_ok=True)

        if mode == "malformed":
            sys.stdout.write("this is not json\n")
            sys.stdout.write('{"type": "assistant", "message": "broken"\n')
            sys.stdout.flush()

        emit(
            {
                "type": "assistant",
                "session_id": session_id,
                "message": {
                    "content": [
                        {
                            "type": "tool_use",
                            "id": "toolu_1",
                            "name": "Write",
                            "input": {"file_path": target, "content": prompt},
                        }
                    ]
                },
            }
        )
        with open(target, "w") as f:
            f.write("".join(f"// {line}\n" for line in prompt.splitlines()))
        emit(
            {
                "type": "user",
                "session_id": session_id,
                "message": {
                    "content": [
                        {
                            "type": "tool_result",
                            "tool_use_id": "toolu_1",
                            "content": "File written",
                        }
                    ]
                },
            }
        )

    emit(
        {
            "type": "result",
            "subtype": "success",
            "is_error": False,
            "result": f"Done: {prompt}",
            "session_id": session_id,
            "total_cost_usd": 0.01,
            "usage": {"input_tokens": 10, "output_tokens": 20},
        }
    )


if __name__ == "__main__":
    main()
