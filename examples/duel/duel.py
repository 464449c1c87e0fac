import argparse
import asyncio
import os

import logging
import shlex
import traceback

from dotenv import load_dotenv

from prompt_toolkit import PromptSession
from prompt_toolkit.completion import Completer, Completion
from prompt_toolkit.history import FileHistory

from vgame import Coordinator, TaskParams, VGameError
from vgame.environment import Environment
from vgame.ledger import DisputeInitialised, DisputeNewRound, Registered, Requested, Slashed
from vgame.local import LocalChain, make_address
from vgame.state import data_hash
from vgame.utils import short_hex, to_hex

from toyvm import SAMPLE_PROGRAM, ToyVM, disassemble, faulty_runtime, fragment_commitment, sample_call_data

logging.basicConfig(filename='vgame-cli.log', level=logging.DEBUG)


class ActionArgumentCompleter(Completer):
    ACTION_ARGUMENTS = {
        "bonds": [],
        "disputes": [],
        "events": [],
        "mine": [],
        "program": [],
        "request": ["a=", "b=", "party="],
        "solutions": ["party="],
        "timeout": ["dispute=", "party="],
    }

    def get_completions(self, document, complete_event):
        word_before_cursor = document.get_word_before_cursor(WORD=True)

        if ' ' not in document.text:
            # user is typing the action
            for action in self.ACTION_ARGUMENTS.keys():
                if action.startswith(word_before_cursor):
                    yield Completion(action, start_position=-len(word_before_cursor))
        else:
            # user is typing an argument, find which are valid
            action = document.text.split()[0]
            for argument in self.ACTION_ARGUMENTS.get(action, []):
                if argument not in document.text and argument.startswith(word_before_cursor):
                    yield Completion(argument, start_position=-len(word_before_cursor))


load_dotenv()

bond_amount = int(os.getenv("VGAME_BOND_AMOUNT", 999))
challenge_period = int(os.getenv("VGAME_CHALLENGE_PERIOD", 100))
timeout_duration = int(os.getenv("VGAME_TIMEOUT_DURATION", 10))


def describe_event(evt) -> str:
    sender = short_hex(bytes.fromhex(evt.tx_from[2:]), 8)
    if isinstance(evt, Requested):
        return f"Requested task={short_hex(evt.task_hash, 8)} from={sender}"
    elif isinstance(evt, Registered):
        return f"Registered execution={short_hex(evt.execution_id, 8)} depth={evt.execution_depth} result={evt.result_bytes.hex()} from={sender}"
    elif isinstance(evt, DisputeInitialised):
        return f"DisputeInitialised dispute={short_hex(evt.dispute_id, 8)} execution={short_hex(evt.execution_id, 8)} from={sender}"
    elif isinstance(evt, DisputeNewRound):
        return f"DisputeNewRound dispute={short_hex(evt.dispute_id, 8)} timeout={evt.timeout} solver={short_hex(evt.solver_path, 8)} challenger={short_hex(evt.challenger_path, 8)}"
    elif isinstance(evt, Slashed):
        return f"Slashed execution={short_hex(evt.execution_id, 8)} address={evt.address}"
    return repr(evt)


def find_dispute(prefix: str) -> bytes:
    matches = [d for d in environment.chain.games.keys() if d.hex().startswith(prefix.lower().removeprefix("0x"))]
    if len(matches) != 1:
        raise ValueError(f"No unique dispute with prefix {prefix}")
    return matches[0]


async def deliver_events():
    try:
        n = await environment.chain.process_events()
        print(f"{n} events delivered")
    except ExceptionGroup as eg:
        for err in eg.exceptions:
            print(f"Listener error: {err}")


async def execute_command(input_line: str):
    # consider lines starting with '#' (possibly prefixed with whitespaces) as comments
    if input_line.strip().startswith("#"):
        return

    # Split into a command and the list of arguments
    try:
        input_line_list = shlex.split(input_line)
    except ValueError as e:
        print(f"Invalid command: {str(e)}")
        return

    # Ensure input_line_list is not empty
    if input_line_list:
        action = input_line_list[0].strip()
    else:
        return

    # Get the necessary arguments from input_command_list
    args_dict = {}
    pos_count = 0  # count of positional arguments
    for item in input_line_list[1:]:
        parts = item.strip().split('=', 1)
        if len(parts) == 2:
            param, value = parts
            args_dict[param] = value
        else:
            # record positional arguments with keys @0, @1, ...
            args_dict['@' + str(pos_count)] = parts[0]
            pos_count += 1

    chain = environment.chain

    if action == "":
        return
    elif action not in actions:
        print("Invalid action")
        return
    elif action == "program":
        for i, instr in enumerate(disassemble(SAMPLE_PROGRAM)):
            print(i, instr)
    elif action == "mine":
        if '@0' in args_dict:
            n_blocks = int(args_dict['@0'])
        else:
            n_blocks = 1
        print(chain.mine_blocks(n_blocks))
    elif action == "events":
        for i, evt in enumerate(chain.log):
            print(i, describe_event(evt))
    elif action == "bonds":
        for name, coordinator in environment.coordinators.items():
            print(name, coordinator.address, await chain.enforcer.bonds(coordinator.address))
    elif action == "disputes":
        for dispute_id, game in chain.games.items():
            print(to_hex(dispute_id), game.state.name, f"rounds_left={game.rounds_left}", f"timeout={game.timeout}")
    elif action == "solutions":
        coordinator = environment.coordinator(args_dict.get("party", "alice"))
        for execution_id, sol in coordinator.solutions.items():
            print(to_hex(execution_id), sol.tree)
        for dispute_id, session in coordinator.disputes.items():
            print(session)
    elif action == "request":
        a = int(args_dict["a"])
        b = int(args_dict["b"])
        coordinator = environment.coordinator(args_dict.get("party", "alice"))

        call_data = sample_call_data(a, b)
        params = TaskParams(code_addr, data_hash(call_data))
        task_hash = await coordinator.request_execution(params, call_data)
        print(f"Requested task {to_hex(task_hash)}")

        await deliver_events()
    elif action == "timeout":
        dispute_id = find_dispute(args_dict["dispute"])
        coordinator = environment.coordinator(args_dict.get("party", "bob"))

        receipt = await coordinator.verifier.claim_timeout(dispute_id)
        print(f"Timeout claimed in block {receipt.block_number}")

        await deliver_events()


async def cli_main():
    completer = ActionArgumentCompleter()
    # Create a history object
    history = FileHistory('.cli-history')
    session = PromptSession(history=history, completer=completer)

    while True:
        try:
            input_line = await session.prompt_async("⚔ ")
            await execute_command(input_line)
        except (KeyboardInterrupt, EOFError):
            raise  # exit
        except (VGameError, ValueError, KeyError) as err:
            print(f"Error: {err}")
            print(traceback.format_exc())


async def script_main(script_filename: str):
    with open(script_filename, "r") as script_file:
        for input_line in script_file:
            if input_line.strip() == "" or input_line.strip().startswith("#"):
                continue
            environment.prompt(f"> {input_line.strip()}")
            try:
                await execute_command(input_line)
            except (VGameError, ValueError, KeyError) as e:
                print(f"Error executing command: {input_line.strip()} - Error: {str(e)}")
                break


def on_slashed(execution_id: bytes):
    print(f"alice was slashed on execution {to_hex(execution_id)}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser()

    # Script file option
    parser.add_argument("--script", "-s", type=str, help="Execute commands from script file")

    parser.add_argument("--dishonest", "-d", type=int, nargs="?", const=5, default=None,
                        help="Make alice's runtime miscompute the given step (default: 5)")

    parser.add_argument("--always-challenge", action="store_true", help="Make bob dispute every execution")

    parser.add_argument("--interactive", "-i", action="store_true", help="Pause before each command of the script")

    args = parser.parse_args()

    actions = ["bonds", "disputes", "events", "mine", "program", "request", "solutions", "timeout"]

    chain = LocalChain(ToyVM(), bond_amount=bond_amount, challenge_period=challenge_period,
                       timeout_duration=timeout_duration)
    code_addr = chain.deploy_code(SAMPLE_PROGRAM)

    alice = Coordinator(chain.enforcer, chain.verifier, make_address(b"alice"), faulty_runtime(args.dishonest),
                        fragmenter=fragment_commitment, on_slashed=on_slashed, log_tag="alice")
    bob = Coordinator(chain.enforcer, chain.verifier, make_address(b"bob"), ToyVM(),
                      fragmenter=fragment_commitment, log_tag="bob", always_challenge=args.always_challenge)

    environment = Environment(chain, {"alice": alice, "bob": bob}, args.interactive)

    if args.script:
        asyncio.run(script_main(args.script))
    else:
        try:
            asyncio.run(cli_main())
        except (KeyboardInterrupt, EOFError):
            pass  # exit
