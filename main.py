import argparse
import sys
import asyncio
from typing import List, Optional

from bookmark_digest.models import log, ArticleFilter
from bookmark_digest.config import DigestConfig
from bookmark_digest.errors import DigestError
from bookmark_digest.database.article_repository import SORT_ORDERS
from bookmark_digest.core.pipeline import Digest

def parse_args(argv: Optional[List[str]] = None):
    parser = argparse.ArgumentParser(description="Bookmark Digest: save articles and bundle them into EPUBs")
    parser.add_argument("--config", help="YAML config file (default: digest.yaml)")
    sub = parser.add_subparsers(dest="command", required=True)

    capture = sub.add_parser("capture", help="Capture an article from saved HTML")
    capture.add_argument("url", help="Canonical URL of the article")
    capture.add_argument("-f", "--html-file", help="HTML file to read (default: stdin)")
    capture.add_argument("--no-images", action="store_true", help="Keep remote image URLs instead of downloading")
    capture.add_argument("-T", "--tag", action="append", dest="tags", help="Tag to attach (repeatable)")

    ls = sub.add_parser("list", help="List saved articles")
    ls.add_argument("-s", "--search")
    ls.add_argument("--tag", help="Only articles carrying this tag")
    ls.add_argument("--archived", action="store_true", default=None)
    ls.add_argument("--favorite", action="store_true", default=None)
    ls.add_argument("--failed", action="store_true", help="Show failed captures instead")
    ls.add_argument("--sort", default="created_at_desc", choices=sorted(SORT_ORDERS))
    ls.add_argument("--page", type=int, default=1)
    ls.add_argument("--limit", type=int, default=20)

    show = sub.add_parser("show", help="Show one article")
    show.add_argument("id", type=int)

    export = sub.add_parser("export", help="Bundle articles into an EPUB")
    export.add_argument("ids", type=int, nargs="+")
    export.add_argument("-t", "--title")
    export.add_argument("-a", "--author")
    export.add_argument("--cover", help="Cover image to use instead of a generated one")

    tag = sub.add_parser("tag", help="Attach tags to an article")
    tag.add_argument("id", type=int)
    tag.add_argument("names", nargs="+")

    sub.add_parser("tags", help="List tags with article counts")

    exports = sub.add_parser("exports", help="List generated EPUBs")
    exports.add_argument("--limit", type=int, default=20)

    delete = sub.add_parser("delete", help="Delete an article (or an export with --export)")
    delete.add_argument("id", type=int)
    delete.add_argument("--export", action="store_true")
    return parser.parse_args(argv)

def read_html(path: Optional[str]) -> str:
    if path:
        with open(path, 'r', encoding='utf-8', errors='replace') as f:
            return f.read()
    return sys.stdin.read()

async def run(args, digest: Digest):
    if args.command == "capture":
        result = await digest.ingest(read_html(args.html_file), args.url, preserve_images=not args.no_images,
                                     tags=args.tags)
        if getattr(result, "success", True) is False:
            print(f"Capture failed: {result.error}")
            return 1
        print(f"[{result.id}] {result.title} ({result.word_count} words, {result.image_count} images)")

    elif args.command == "list":
        filters = ArticleFilter(
            search=args.search,
            tag=args.tag,
            is_archived=args.archived,
            is_favorite=args.favorite,
            capture_success=False if args.failed else True,
            sort_by=args.sort,
        )
        rows, total = digest.store.list(filters, page=args.page, limit=args.limit)
        for a in rows:
            flags = ("A" if a.is_archived else "-") + ("F" if a.is_favorite else "-")
            detail = a.capture_error if not a.capture_success else f"{a.reading_time_minutes} min"
            print(f"{a.id:>5} {flags} {a.title[:60]:<60} {detail}")
        print(f"{len(rows)} of {total} articles (page {args.page})")

    elif args.command == "show":
        a = digest.store.get(args.id)
        for key, value in a.to_public().items():
            print(f"{key:>22}: {value}")

    elif args.command == "export":
        result = await digest.export(args.ids, title=args.title, author=args.author, cover_path=args.cover)
        print(f"Export {result.id}: {result.file_path} ({result.article_count} articles, {result.file_size} bytes)")

    elif args.command == "tag":
        tags = digest.store.add_tags(args.id, args.names)
        print(f"Article {args.id} tags: {', '.join(t.name for t in tags)}")

    elif args.command == "tags":
        for t in digest.store.list_tags():
            print(f"{t.id:>5} {t.name:<30} {t.article_count:>4} articles")

    elif args.command == "exports":
        for e in digest.store.list_exports(args.limit):
            sent = f"sent {e.sent_at}" if e.sent_to_kindle else "not sent"
            print(f"{e.id:>5} {e.name[:50]:<50} {e.article_count:>3} articles  {e.file_size:>9} bytes  {sent}")

    elif args.command == "delete":
        if args.export:
            digest.store.delete_export(args.id)
            print(f"Deleted export {args.id}")
        else:
            digest.store.delete(args.id)
            print(f"Deleted article {args.id}")
    return 0

async def async_main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    digest = Digest(DigestConfig.load(args.config))
    try:
        return await run(args, digest)
    except DigestError as e:
        log.error(f"{e.kind}: {e.message}")
        return 1
    finally:
        digest.close()

if __name__ == "__main__":
    sys.exit(asyncio.run(async_main()))
