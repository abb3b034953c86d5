from __future__ import annotations

import argparse
import logging
import threading
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler
from rich.progress import Progress, SpinnerColumn, TextColumn, TimeElapsedColumn

from sakura_avatar.catalog import build_style_catalog, default_user_photo, list_user_photos
from sakura_avatar.config import load_config
from sakura_avatar.tasks.data_url import decode_data_url, extension_for_mime
from sakura_avatar.tasks.generator import AvatarGenerator
from sakura_avatar.tasks.request import UploadedPhoto


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Generate a kimono avatar for a user photo on a ComfyUI server."
    )
    parser.add_argument("username", type=str, help="User the avatar is generated for.")
    parser.add_argument(
        "--photo",
        type=str,
        default=None,
        help=(
            "Local image path, http(s) URL or data:image/ URL. Defaults to the first "
            "previously uploaded photo for the user."
        ),
    )
    parser.add_argument("--garment", type=str, default="k1", help="Garment id from the style catalog.")
    parser.add_argument("--backdrop", type=str, default="b1", help="Backdrop id from the style catalog.")
    parser.add_argument("--hint", type=str, default=None, help="Optional free-text style hint.")
    parser.add_argument(
        "--output-dir",
        type=Path,
        default=Path("outputs"),
        help="Directory the generated avatar is written to.",
    )
    parser.add_argument(
        "--dotenv",
        type=Path,
        default=None,
        help="Optional path to a .env file with ComfyUI and Azure settings.",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="WARNING",
        help="Logging level for pipeline diagnostics.",
    )
    return parser.parse_args()


def _photo_input(value: str) -> UploadedPhoto | str:
    if value.startswith(("http://", "https://", "data:")):
        return value
    path = Path(value)
    return UploadedPhoto(data=path.read_bytes(), filename=path.name)


def main() -> None:
    args = parse_args()
    console = Console()
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(name)s: %(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
    )

    config = load_config(args.dotenv)
    catalog = build_style_catalog(config.assets.catalog_path, config.assets.static_root)
    try:
        garment = catalog.garment(args.garment)
        backdrop = catalog.backdrop(args.backdrop)
    except KeyError as exc:
        console.print(f"[red]{exc.args[0]}[/red]")
        raise SystemExit(1)

    photo_arg = args.photo
    if photo_arg is None and config.assets.user_photo_dir is not None:
        photos = list_user_photos(config.assets.user_photo_dir, args.username)
        chosen = default_user_photo(photos)
        if chosen is not None:
            console.print(f"Using previously uploaded photo [cyan]{chosen.name}[/cyan]")
            photo_arg = str(chosen)
    if photo_arg is None:
        console.print("[red]No photo given and no previous upload found for this user.[/red]")
        raise SystemExit(1)
    if not photo_arg.startswith(("http://", "https://", "data:")) and not Path(photo_arg).exists():
        console.print(f"[red]Photo file not found:[/red] {photo_arg}")
        raise SystemExit(1)

    request = {
        "requester_id": args.username,
        "photo": _photo_input(photo_arg),
        "garment": garment,
        "backdrop": backdrop,
        "hint": args.hint,
    }

    cancel = threading.Event()
    with AvatarGenerator(config) as generator:
        console.print(
            f"Generating [bold]{garment.display_name}[/bold] in [bold]{backdrop.display_name}[/bold] "
            f"via {config.comfyui.server_address}"
        )
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            TimeElapsedColumn(),
            console=console,
        ) as progress:
            progress.add_task("Waiting for ComfyUI", total=None)
            try:
                result = generator.generate(request, cancel)
            except KeyboardInterrupt:
                cancel.set()
                console.print("[yellow]Cancelled.[/yellow]")
                raise SystemExit(130)

    if not result.success:
        console.print(f"[red]{result.error_kind}:[/red] {result.error}")
        raise SystemExit(1)

    data, mime_type = decode_data_url(result.image_url or "")
    args.output_dir.mkdir(parents=True, exist_ok=True)
    output_path = args.output_dir / f"{args.username}_{result.job_id}.{extension_for_mime(mime_type)}"
    output_path.write_bytes(data)
    console.print(f"[green]Prompt:[/green] {result.prompt}")
    console.print(f"[green]Saved avatar to[/green] {output_path}")


if __name__ == "__main__":
    main()
