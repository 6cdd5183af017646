"""USB and ISO installer media: partition tables, filesystems and the image build."""
