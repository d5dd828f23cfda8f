import os
import re
import string

import pytest

from asyfs.errors import DirectoryReadError
from asyfs.listing import build_listing, render_listing, load_template, Listing, Entry


@pytest.fixture
def tree(tmp_path):
    (tmp_path / 'sub').mkdir()
    (tmp_path / 'a.txt').write_bytes(b'a' * 500)
    return tmp_path

def test_build_listing_entries(tree):
    listing = build_listing(str(tree), '/')
    assert len(listing) == 2
    sub, afile = listing.entries

    assert sub.name == 'sub/'
    assert sub.size_label == '-'
    assert sub.link.endswith('/')
    assert sub.is_dir is True

    assert afile.name == 'a.txt'
    assert afile.size_label == '500 B'
    assert afile.link == 'a.txt'
    assert re.match(r'^\d{4}-\d{2}-\d{2} \d{2}:\d{2}$', afile.mod_time_label)

def test_directories_first_then_name(tmp_path):
    for name in ('b.txt', 'a.txt', 'zdir', 'cdir'):
        if name.endswith('dir'):
            (tmp_path / name).mkdir()
        else:
            (tmp_path / name).write_bytes(b'')
    names = [e.name for e in build_listing(str(tmp_path))]
    assert names == ['cdir/', 'zdir/', 'a.txt', 'b.txt']

def test_links_are_percent_encoded(tmp_path):
    (tmp_path / 'my file.txt').write_bytes(b'x')
    (tmp_path / 'a&b').mkdir()
    links = {e.name: e.link for e in build_listing(str(tmp_path))}
    assert links['my file.txt'] == 'my%20file.txt'
    assert links['a&b/'] == 'a%26b/'

def test_empty_directory(tmp_path):
    listing = build_listing(str(tmp_path), '/empty/')
    assert len(listing) == 0
    assert listing.display_path == '/empty/'

def test_dangling_symlink_skipped(tmp_path):
    os.symlink(str(tmp_path / 'missing'), str(tmp_path / 'dangling'))
    (tmp_path / 'real.txt').write_bytes(b'x')
    assert [e.name for e in build_listing(str(tmp_path))] == ['real.txt']

def test_unreadable_directory(tmp_path):
    with pytest.raises(DirectoryReadError) as excinfo:
        build_listing(str(tmp_path / 'nope'), '/nope/')
    assert excinfo.value.status_code == 500
    assert '/nope/' in excinfo.value.message

def test_render_listing_default_template(tree):
    page = render_listing(build_listing(str(tree), '/'))
    assert '<a href="sub/">sub/</a>' in page
    assert '<a href="a.txt">a.txt</a>' in page
    assert '500 B' in page
    assert '2 item(s)' in page
    assert 'action="/upload"' in page
    assert 'name="files"' in page
    # no parent row at the root
    assert 'href="../"' not in page

def test_render_listing_escapes_and_parent_row():
    listing = Listing('/docs/<x>/', [Entry('a&b.txt', '1 B', '2020-01-01 00:00', 'a%26b.txt')])
    template = string.Template('$display_path|$parent|$rows|$count')
    page = render_listing(listing, template)
    assert page.startswith('/docs/&lt;x&gt;/|')
    assert 'href="../"' in page
    assert '>a&amp;b.txt<' in page
    assert page.endswith('|1')

def test_modtime_hidden_for_directories():
    listing = Listing('/', [Entry('d/', '-', '2020-01-01 00:00', 'd/', is_dir=True)])
    page = render_listing(listing, string.Template('$rows'))
    assert '2020-01-01' not in page

def test_load_template_from_disk(tmp_path):
    path = tmp_path / 'index.html'
    path.write_text('<h1>$display_path</h1>', encoding='utf-8')
    page = render_listing(Listing('/x/'), load_template(str(path)))
    assert page == '<h1>/x/</h1>'
