"""
Genera el par de claves RSA para firmar los JWT con RS256, o un secreto
aleatorio para HS256. Imprime las variables de entorno a configurar.

Uso:
    python scripts/generate_keys.py rsa [--out-dir keys] [--bits 3072] [--force]
    python scripts/generate_keys.py secret
"""

import argparse
import secrets
import sys
from pathlib import Path

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

ROOT = Path(__file__).resolve().parent.parent


def write_rsa_pair(out_dir: Path, bits: int, force: bool) -> tuple[Path, Path]:
    private_path = out_dir / "private.pem"
    public_path = out_dir / "public.pem"
    if not force and (private_path.exists() or public_path.exists()):
        raise FileExistsError(f"{out_dir} ya contiene claves (usar --force para reemplazarlas)")

    key = rsa.generate_private_key(public_exponent=65537, key_size=bits)
    out_dir.mkdir(parents=True, exist_ok=True)
    private_path.write_bytes(
        key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
    )
    private_path.chmod(0o600)
    public_path.write_bytes(
        key.public_key().public_bytes(
            serialization.Encoding.PEM,
            serialization.PublicFormat.SubjectPublicKeyInfo,
        )
    )
    return private_path, public_path


def _relative(path: Path) -> str:
    try:
        return f"./{path.resolve().relative_to(ROOT)}"
    except ValueError:
        return str(path.resolve())


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Claves de firma para los JWT")
    sub = parser.add_subparsers(dest="mode", required=True)

    rsa_cmd = sub.add_parser("rsa", help="par RSA para RS256")
    rsa_cmd.add_argument("--out-dir", type=Path, default=ROOT / "keys")
    rsa_cmd.add_argument("--bits", type=int, choices=(2048, 3072, 4096), default=3072)
    rsa_cmd.add_argument("--force", action="store_true")

    sub.add_parser("secret", help="secreto aleatorio para HS256")

    args = parser.parse_args(argv)

    if args.mode == "secret":
        print("JWT_ALGORITHM=HS256")
        print(f"JWT_SECRET_KEY={secrets.token_urlsafe(48)}")
        return 0

    try:
        private_path, public_path = write_rsa_pair(args.out_dir, args.bits, args.force)
    except FileExistsError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1
    print("JWT_ALGORITHM=RS256")
    print(f"JWT_PRIVATE_KEY_PATH={_relative(private_path)}")
    print(f"JWT_PUBLIC_KEY_PATH={_relative(public_path)}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
