# scripts/sign_url.py
import argparse  # parse CLI args
import sys  # exit codes

from fotofacil.config import get_settings  # service account + bucket from env
from fotofacil.errors import FotoFacilError  # config / signing failures
from fotofacil.signing import sign_url  # V4 signer

def main() -> None:  # main entrypoint
    parser = argparse.ArgumentParser()  # CLI parser
    parser.add_argument("--object-path", required=True)  # e.g. originals/fotofacil/<event>/<file>.jpg
    parser.add_argument("--minutes", type=int, default=60)  # validity window
    args = parser.parse_args()  # parse args

    settings = get_settings()  # reads GCS_* env vars
    try:
        signed = sign_url(settings.service_account(), settings.gcs_bucket_name, args.object_path, args.minutes)
    except FotoFacilError as e:
        print(f"error: {e}", file=sys.stderr)  # config or signing failure
        sys.exit(1)

    print(signed.url)  # signed URL to stdout
    print(f"expires_at={signed.expires_at.isoformat()}", file=sys.stderr)  # window end

if __name__ == "__main__":  # run as script
    main()  # call main
