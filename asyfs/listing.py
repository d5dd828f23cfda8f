import os
import html
import string
import datetime
import urllib.parse

from asyfs.errors import DirectoryReadError
from asyfs.utils.formatting import format_bytes

MODTIME_FORMAT = '%Y-%m-%d %H:%M'
TEMPLATE_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'templates', 'index.html')


class Entry:
    def __init__(self, name:str, size_label:str, mod_time_label:str, link:str, is_dir:bool = False):
        self.name = name
        self.size_label = size_label
        self.mod_time_label = mod_time_label
        self.link = link
        self.is_dir = is_dir

    def __repr__(self):
        return 'Entry(name=%r, size_label=%r, mod_time_label=%r, link=%r)' % (self.name, self.size_label, self.mod_time_label, self.link)


class Listing:
    def __init__(self, display_path:str, entries = None):
        self.display_path = display_path
        self.entries = entries
        if entries is None:
            self.entries = []

    def __len__(self):
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries)


def build_listing(path:str, display_path:str = None) -> Listing:
    """
    Reads the immediate children of a directory and returns a rendering-ready listing.
    Directories come first, then files, each group ordered by name.

    Args:
        path (str): Absolute path of an existing directory
        display_path (str): Path shown to the user, defaults to `path`

    Returns:
        Listing: the directory listing

    Raises:
        DirectoryReadError: the directory could not be read
    """
    if display_path is None:
        display_path = path
    listing = Listing(display_path)

    try:
        with os.scandir(path) as it:
            dirents = list(it)
    except OSError as e:
        raise DirectoryReadError('Error listing files in directory %s: %s' % (display_path, e.strerror or e), innerexception=e)

    entries = []
    for dirent in dirents:
        try:
            is_dir = dirent.is_dir()
            st = dirent.stat()
        except FileNotFoundError:
            # removed after the directory was read, or a dangling symlink
            continue
        except OSError as e:
            raise DirectoryReadError('Error reading entry %s: %s' % (dirent.name, e.strerror or e), innerexception=e)

        mod_time = datetime.datetime.fromtimestamp(st.st_mtime).strftime(MODTIME_FORMAT)
        if is_dir:
            name = dirent.name + '/'
            size = '-'
        else:
            name = dirent.name
            size = format_bytes(st.st_size)
        entries.append(Entry(name, size, mod_time, urllib.parse.quote(name), is_dir))

    entries.sort(key=lambda e: (not e.is_dir, e.name))
    listing.entries = entries
    return listing

def load_template(path:str = TEMPLATE_PATH) -> string.Template:
    with open(path, 'r', encoding='utf-8') as f:
        return string.Template(f.read())

def render_listing(listing:Listing, template:string.Template = None) -> str:
    """Fills the listing template with the entries of `listing`"""
    if template is None:
        template = load_template()

    rows = []
    for entry in listing:
        rows.append(
            '            <tr><td><a href="%s">%s</a></td><td class="size">%s</td><td class="modtime">%s</td></tr>' % (
                html.escape(entry.link),
                html.escape(entry.name),
                html.escape(entry.size_label),
                '' if entry.is_dir else html.escape(entry.mod_time_label),
            )
        )

    parent = ''
    if listing.display_path not in ('', '/'):
        parent = '            <tr><td><a href="../">../</a></td><td class="size">-</td><td class="modtime"></td></tr>'

    return template.safe_substitute(
        display_path = html.escape(listing.display_path),
        parent = parent,
        rows = '\n'.join(rows),
        count = len(listing),
    )
