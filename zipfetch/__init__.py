#!/usr/bin/env python

"""Stream zip archives of remote files without buffering them"""

from zipfetch.archive import *
from zipfetch.descriptor import *
from zipfetch.entries import *
from zipfetch.errors import *
from zipfetch.listing import *
from zipfetch.streamer import *
