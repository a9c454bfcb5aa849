#!/usr/bin/env python3
"""cLLMHub CLI - Turn your local LLM into a production API.

Usage:
    cllmhub publish --model llama3 --backend ollama --token <token>
    cllmhub publish -m mixtral-8x7b -b vllm -t <token> --hub-url https://cllmhub.com
    cllmhub ask -m llama3 "What is a WebSocket?"
    cllmhub chat -m llama3
    cllmhub models
    cllmhub status

Environment variables (alternative to args):
    CLLMHUB_HUB_URL      Gateway URL (default: https://cllmhub.com)
    CLLMHUB_TOKEN        Provider token from the LLMHub dashboard
    CLLMHUB_BACKEND      Backend type (default: ollama)
    CLLMHUB_BACKEND_URL  Backend endpoint URL
    CLLMHUB_API_KEY      Bearer key for vllm/custom backends
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import Optional

import httpx

from .config import BackendConfig, BackendType, ProviderConfig, get_config_value
from .consumer import ConsumerClient
from .errors import BackendFailure, ConfigurationError, ConsumerError, HandshakeError, TransportError
from .provider import Provider
from .runtime import RuntimeInfo, get_local_provider, write_runtime_info
from .status_server import StatusServer
from .term_ui import console, models_table, print_error, print_info, print_success, print_token, print_warning

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
log = logging.getLogger("cllmhub")


class Publisher:
    """Runs `cllmhub publish` until interrupted or the connection drops."""

    def __init__(self, config: ProviderConfig):
        self.config = config
        self._provider: Optional[Provider] = None
        self._status_server: Optional[StatusServer] = None
        self._main_task: Optional[asyncio.Task] = None

    async def run(self) -> int:
        """Run the provider. Returns exit code."""
        self._main_task = asyncio.current_task()

        # Setup signal handlers
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, lambda: asyncio.create_task(self._shutdown()))
            except NotImplementedError:
                pass  # Windows: KeyboardInterrupt still ends asyncio.run()

        console.print(
            f"Publishing model [bold]{self.config.model!r}[/bold] "
            f"with backend [bold]{self.config.backend.type.value}[/bold]"
        )
        console.print(f"  Hub:   {self.config.hub_url}")
        if self.config.description:
            console.print(f"  Description: {self.config.description}")
        console.print()

        try:
            self._provider = await Provider.create(self.config)
        except asyncio.CancelledError:
            print_warning("Interrupted before the provider was published")
            return 130
        except BackendFailure as e:
            print_error(f"backend health check failed: {e}")
            return 1
        except (ConfigurationError, HandshakeError) as e:
            print_error(f"failed to initialize provider: {e}")
            return 1

        provider = self._provider
        provider.on_request_complete = self._on_request_complete

        print_success("Connected to LLMHub network")
        print_success(f"Model {self.config.model!r} published as {provider.provider_id}")
        print_success("Listening for requests via WebSocket")

        try:
            if self.config.status_port is not None:
                self._status_server = StatusServer(provider, port=self.config.status_port)
                port = await self._status_server.start()
                print_info(f"Status endpoint: http://127.0.0.1:{port}/status")

            write_runtime_info(
                provider_id=provider.provider_id,
                model=self.config.model,
                backend=provider.backend.name,
                hub_url=self.config.hub_url,
                status_port=self._status_server.port if self._status_server else None,
            )

            await provider.start()
            return 0
        except TransportError as e:
            log.error(f"Connection to hub lost: {e}")
            print_error("Connection to hub lost - restart to publish again")
            return 1
        except OSError as e:
            print_error(f"Failed to start status endpoint: {e}")
            return 1
        finally:
            await self._cleanup()

    def _on_request_complete(self, request_id: str, tokens: int, latency_ms: int) -> None:
        """Called when a request completes."""
        tps = (tokens / latency_ms * 1000) if latency_ms > 0 else 0
        log.info(
            f"Request #{self._provider.request_count}: {request_id[:8]} | "
            f"{tokens} tokens | {latency_ms / 1000:.1f}s | {tps:.1f} tk/s"
        )

    async def _shutdown(self) -> None:
        """Graceful shutdown."""
        console.print("\nShutting down provider...")
        if self._provider is not None:
            await self._provider.stop()
        elif self._main_task is not None:
            # Still connecting: abandon the attempt
            self._main_task.cancel()

    async def _cleanup(self) -> None:
        """Cleanup resources."""
        RuntimeInfo.clear()
        if self._status_server is not None:
            await self._status_server.stop()
        if self._provider is not None:
            await self._provider.stop()
            await self._provider.close()
        log.info("Goodbye!")


# =============================================================================
# Consumer commands
# =============================================================================

async def run_ask(hub_url: str, model: str, prompt: str, max_tokens: int, temperature: float, stream: bool) -> int:
    client = ConsumerClient(hub_url)

    if stream:
        console.print(f"[bold cyan]{model}:[/bold cyan] ", end="")
        try:
            await client.stream(model, prompt, print_token, max_tokens=max_tokens, temperature=temperature)
        except ConsumerError as e:
            console.print()
            print_error(str(e))
            return 1
        console.print()
        return 0

    try:
        text = await client.ask(model, prompt, max_tokens=max_tokens, temperature=temperature)
    except ConsumerError as e:
        print_error(str(e))
        return 1
    console.print(f"[bold cyan]{model}:[/bold cyan] ", end="")
    print_token(text)
    console.print()
    return 0


async def run_chat(hub_url: str, model: str) -> int:
    client = ConsumerClient(hub_url)
    console.print(f"Starting chat with [bold]{model}[/bold] (type 'exit' to quit)\n")

    while True:
        try:
            user_input = console.input("[bold green]You:[/bold green] ").strip()
        except (EOFError, KeyboardInterrupt):
            break

        if not user_input:
            continue
        if user_input.lower() == "exit":
            console.print("Goodbye!")
            break

        console.print(f"[bold cyan]{model}:[/bold cyan] ", end="")
        try:
            await client.stream(model, user_input, print_token, max_tokens=1024, temperature=0.7)
            console.print()
        except ConsumerError as e:
            console.print()
            print_error(f"Error: {e}")
        console.print()

    return 0


async def run_models(hub_url: str) -> int:
    client = ConsumerClient(hub_url)
    try:
        models = await client.list_models()
    except ConsumerError as e:
        print_error(f"failed to list models: {e}")
        return 1

    if not models:
        console.print("No models available.")
        return 0

    console.print(models_table(models))
    return 0


async def run_status(hub_url: str) -> int:
    client = ConsumerClient(hub_url)
    console.print(f"Checking hub at {hub_url} ...")

    exit_code = 0
    try:
        status_code = await client.health()
    except ConsumerError as e:
        console.print("Status:  [red]Unreachable[/red]")
        print_error(str(e))
        exit_code = 1
    else:
        if status_code == 200:
            console.print("Status:  [green]Healthy[/green]")
        else:
            console.print(f"Status:  [yellow]Unhealthy (HTTP {status_code})[/yellow]")

    info = get_local_provider()
    if info is None:
        console.print("Local provider:  not running")
        return exit_code

    console.print(
        f"Local provider:  {info.provider_id} publishing {info.model!r} "
        f"({info.backend}) to {info.hub_url} since {info.started_at}"
    )
    if info.status_port:
        try:
            async with httpx.AsyncClient(timeout=2.0) as http:
                response = await http.get(f"http://127.0.0.1:{info.status_port}/status")
            if response.status_code == 200:
                status = response.json()
                console.print(
                    f"  {status['status']} | uptime {status['uptime_seconds']}s | "
                    f"{status['request_count']} requests | queue depth {status['queue_depth']}"
                )
        except httpx.RequestError:
            # Process exists but endpoint not responding - might be starting up
            pass
    return exit_code


# =============================================================================
# Argument parsing
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cllmhub",
        description="cLLMHub CLI - Turn your local LLM into a production API",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--hub-url",
        default=get_config_value("HUB_URL"),
        help="LLMHub gateway URL (or set CLLMHUB_HUB_URL)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging",
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    publish = sub.add_parser(
        "publish",
        help="Publish a local LLM to the LLMHub network",
        description=(
            "Connect to the gateway via WebSocket, advertise the model and bridge "
            "incoming requests to the local inference backend.\n\n"
            "Supported backends: ollama, llama.cpp, vllm, custom"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    publish.add_argument("-m", "--model", required=True, help="Model name to publish")
    publish.add_argument(
        "-b", "--backend",
        default=get_config_value("BACKEND"),
        help="Backend type: ollama, llama.cpp, vllm, custom (default: ollama)",
    )
    publish.add_argument(
        "--backend-url",
        default=get_config_value("BACKEND_URL"),
        help="Backend endpoint URL (overrides default for the backend type)",
    )
    publish.add_argument(
        "--api-key",
        default=get_config_value("API_KEY"),
        help="Bearer key sent to vllm/custom backends",
    )
    publish.add_argument("-d", "--description", default="", help="Model description")
    publish.add_argument("-c", "--max-concurrent", type=int, default=1, help="Maximum concurrent requests")
    publish.add_argument(
        "-t", "--token",
        default=get_config_value("TOKEN"),
        help="Provider token from the LLMHub dashboard (or set CLLMHUB_TOKEN)",
    )
    publish.add_argument(
        "--reject-when-busy",
        action="store_true",
        help="Answer requests beyond --max-concurrent with an error instead of queuing them",
    )
    publish.add_argument("--status-port", type=int, default=None, help="Serve local status on this port")

    ask = sub.add_parser("ask", help="Send a prompt to a model and get a response")
    ask.add_argument("-m", "--model", required=True, help="Model to use")
    ask.add_argument("--max-tokens", type=int, default=512, help="Maximum tokens in response")
    ask.add_argument("-t", "--temperature", type=float, default=0.7, help="Sampling temperature")
    ask.add_argument("-s", "--stream", action="store_true", help="Stream response tokens")
    ask.add_argument("prompt", nargs="+", help="Prompt text")

    chat = sub.add_parser("chat", help="Start an interactive chat session with a model")
    chat.add_argument("-m", "--model", required=True, help="Model to chat with")

    sub.add_parser("models", help="List available models on the network")
    sub.add_parser("status", help="Show hub connectivity and local provider status")

    return parser


def build_provider_config(args: argparse.Namespace) -> ProviderConfig:
    """Turn publish flags into the immutable provider configuration."""
    backend_type = BackendType.parse(args.backend)
    return ProviderConfig(
        model=args.model,
        token=args.token,
        hub_url=args.hub_url,
        description=args.description,
        max_concurrent=args.max_concurrent,
        reject_when_busy=args.reject_when_busy,
        status_port=args.status_port,
        backend=BackendConfig(
            type=backend_type,
            url=args.backend_url,
            model=args.model,
            api_key=args.api_key,
        ),
    )


def main(argv: Optional[list[str]] = None):
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    if args.command == "publish":
        try:
            config = build_provider_config(args)
        except ConfigurationError as e:
            print_error(str(e))
            sys.exit(1)
        exit_code = asyncio.run(Publisher(config).run())
    elif args.command == "ask":
        prompt = " ".join(args.prompt)
        exit_code = asyncio.run(
            run_ask(args.hub_url, args.model, prompt, args.max_tokens, args.temperature, args.stream)
        )
    elif args.command == "chat":
        exit_code = asyncio.run(run_chat(args.hub_url, args.model))
    elif args.command == "models":
        exit_code = asyncio.run(run_models(args.hub_url))
    else:
        exit_code = asyncio.run(run_status(args.hub_url))

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
